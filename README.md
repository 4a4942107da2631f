# minexus

`minexus` holds the worker ("minion") side of a command-dispatch system. A
minion registers with a central server, keeps a two-way command stream open,
runs the commands it receives and reports status updates and results back.

The package has no third-party dependencies. You supply the transport and the
commands. To do that, subclass the abstract base classes `MinionService` and
`CommandStream` from `minexus.interfaces`, and provide a `CommandRegistry`
that runs commands.

## Pieces

- `minexus.messages`: the message data types. These are `Command`,
  `CommandType` (`SYSTEM` or `INTERNAL`), `CommandResult`,
  `CommandStatusUpdate`, `HostInfo` and `RegisterResponse`. There is also
  `CommandStreamMessage`, which carries at most one payload and is built with
  `of_command`, `of_result` or `of_status`.
- `minexus.interfaces`: the abstract contracts the components rely on:
  `CommandStream`, `MinionService`, `CommandRegistry`, `ConnectionManager`,
  `CommandExecutor` and `RegistrationManager`.
- `minexus.reconnect.ReconnectionManager`: exponential backoff, capped at a
  maximum delay. It can add full jitter, which gives a random value below the
  delay and never less than 100 ms. Jitter is on by default. The
  `jitter_enabled` and `backoff_multiplier` properties can be set; a
  multiplier of 1.0 or less is ignored. `stats()` returns a
  `ReconnectionStats` snapshot.
- `minexus.registration.ServiceRegistrationManager`:
  - `register()` registers once. It takes on a server-assigned ID when the
    server gives one.
  - `periodic_register()` sends heartbeats until a cancel event is set.
  - `create_host_info()` reports the host name (from the `hostname` command),
    an IPv4 address and the OS.
  - `get_hostname()` is also available as a module function.
- `minexus.connection.StreamConnectionManager`: opens the command stream,
  passing the minion ID as `minion-id` metadata. It closes the stream on
  `disconnect()`. `handle_reconnection()` waits for the next backoff delay
  and then reopens the stream.
  - It raises `ConnectionInProgressError` when an attempt is already under way.
  - It raises `NotConnectedError` when no stream is open.
  - It raises `concurrent.futures.CancelledError` when cancelled.
- `minexus.processor.CommandProcessor`: receives commands from a stream and
  runs each one through the registry.
  - For each command it sends the `RECEIVED` and `EXECUTING` statuses, then
    the result, then `COMPLETED` or `FAILED`.
  - A message that cannot be sent is kept in `pending_results` or
    `pending_statuses`. It is sent again by `flush_pending()`, which
    `process_commands()` calls first.
  - `process_commands()` returns when no message arrives within the stream
    timeout. It re-raises stream errors, so the end of a stream surfaces as
    `EOFError`.
  - `execute()` raises `CommandNotFoundError` when the registry cannot run a
    command. The error's `result` holds a failure result.
- `minexus.minion.Minion`: ties these together in background threads:
  - an initial registration, tried up to five times with growing pauses;
  - a command loop that re-registers and reconnects whenever the stream is
    lost;
  - a periodic registration heartbeat.

  `execute_command()` runs a single command directly. The module also defines
  `InvalidCommandError`.

## Example

```python
import threading

from minexus.minion import Minion

minion = Minion(
    "worker-1",
    service,                 # your MinionService implementation
    heartbeat_interval=30.0,
    initial_reconnect_delay=5.0,
    max_reconnect_delay=60.0,
    stream_timeout=30.0,
    registry=registry,       # your CommandRegistry implementation
    logger=None,
)

cancel = threading.Event()
minion.start(cancel)         # setting `cancel` stops the minion as well
# ... later
minion.stop()
print(minion.minion_id)      # may have been replaced by a server-assigned ID
```

Backoff on its own:

```python
from minexus.reconnect import ReconnectionManager

manager = ReconnectionManager(0.1, 5.0, None)
manager.jitter_enabled = False
manager.next_delay()   # 0.1
manager.next_delay()   # 0.2
manager.reset_delay()
```

All delays and intervals are given in seconds as floats.

## What it does not do

- It has no network transport. No client for the central server is included;
  the `MinionService` and `CommandStream` implementations are up to you.
- It has no built-in commands. Shell execution and any other command handling
  must come from the `CommandRegistry` you pass in.
- It has no command-line program and no server side.

## Tests

```
pip install -e ".[test]"
pytest
```