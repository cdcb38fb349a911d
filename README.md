# asyncfsm

Declarative finite state machines for `asyncio`.

You write a plain class, and its async methods are the handlers. Decorators
state which state and event each handler answers to, and which states it may
move to. When the class is defined, `asyncfsm` collects the states and events
and checks that every state can be reached from the initial one. If the
definition is wrong, `FsmDefinitionError` is raised at that point. A spawned
machine runs as an `asyncio` task, and you talk to it through a handle.

## Installation

```
pip install asyncfsm
```

To run the test suite:

```
pip install "asyncfsm[test]"
pytest
```

## Declaring a machine

The decorators live in `asyncfsm.validation`. `fsm` lives in `asyncfsm.machine`.

- `@fsm(initial, channel_size=100)` turns the class into a machine. The class
  must define the attributes `Context` and `Error`. It must not define
  `__init__`, because `fsm` supplies one that sets `self.state` and
  `self.context`.
- `@on(state, event)` runs the handler when `event` arrives while the machine
  is in `state`. Stack it to accept the same event in several states. If the
  handler takes a second positional parameter, the event carries a payload,
  and that parameter receives it.
- `@targets(*states, failure=None)` declares the states the handler may move
  to. Moving anywhere else raises `ValueError` inside the task.
  - `failure` names the state for the error path.
  - A move to the failure state does not arm the handler's timeout.
- `@state_timeout("30s")` arms a timeout for the state the handler moves into.
  - Durations are parsed by `parse_duration`. It accepts strings such as
    `"100ms"`, `"30s"`, `"5m"` and `"1h 30m"`.
  - When the timeout runs out, the method marked `@on_timeout` runs.
  - The timer stops after any handled event whose handler has no timeout.
  - An ignored event leaves the timer running.
- Handlers return `Transition.to(state)`, where `state` is a state name, a
  `State` enum member or a `validation.State`. `Transition` comes from
  `asyncfsm.core`.

The decorated class gains these attributes:

- a `State` enum holding every discovered state;
- an `Event` namespace that holds:
  - for an event without a payload, a ready `EventMessage`;
  - for an event with a payload, a callable that builds one;
- a `spawn(context)` class method.

An event sent in a state that has no handler for it is dropped without an
error.

## Example

```python
import asyncio

from asyncfsm.core import Transition
from asyncfsm.machine import fsm
from asyncfsm.validation import on, on_timeout, state_timeout, targets


class Counter:
    def __init__(self):
        self.ticks = 0


@fsm(initial="Idle", channel_size=32)
class WorkerFsm:
    Context = Counter
    Error = None

    @on(state="Idle", event="Start")
    @state_timeout("10s")
    @targets("Running")
    async def on_start(self):
        return Transition.to("Running")

    @on(state="Running", event="Tick")
    @targets("Running")
    async def on_tick(self):
        self.context.ticks += 1
        return Transition.to("Running")

    @on_timeout
    @targets("Idle")
    async def on_expired(self):
        return Transition.to("Idle")


async def run():
    handle, task = WorkerFsm.spawn(Counter())
    await handle.send(WorkerFsm.Event.Start)
    await handle.wait_for_state("Running")
    await handle.send(WorkerFsm.Event.Tick)
    handle.shutdown_graceful()
    context = await task
    print(handle.current_state().name, context.ticks)  # Running 1


asyncio.run(run())
```

## Working with a running machine

Call `spawn(machine_cls, context)` or `MachineClass.spawn(context)` from inside
a running event loop. Either call returns a `Handle` and a `Task`.

`Handle` methods:

- `send(event)` queues an event.
  - It waits while the queue is full.
  - It raises `ChannelClosed` once the machine has stopped.
  - It raises `ValueError` for an event the machine does not know, and
    `TypeError` if the payload does not match the event's declaration.
- `try_send(event)` queues an event without waiting. It raises
  `asyncio.QueueFull` when the queue is full and `ChannelClosed` once the
  machine has stopped.
- `current_state()` returns the machine's current `State` member.
- `wait_for_state(target)` waits until the machine is in `target`.
  - `target` may be a member, a name or a `validation.State`.
  - It raises `ChannelClosed` if the machine stops first.
- `shutdown_graceful()` handles every event already queued, then stops.
- `shutdown_immediate()` stops at once and drops any queued events.

Await the `Task` to get the final context. Failures are raised as subclasses
of `TaskError` from `asyncfsm.core`:

- `FsmError` means a handler raised an instance of the machine's `Error` type.
- `JoinError` covers any other exception, and cancellation through
  `Task.cancel()`.

`Task.done()` reports whether the event loop has finished.

## Bundled demos

The package includes three demos you can run from the command line.

```
asyncfsm-worker
```

This runs `asyncfsm.worker.WorkerFsm`. It saves a job, moves to `Working`, then
returns to `Idle` on `Done`. It prints `Final state: Idle`.

```
asyncfsm-comparison
```

This runs a hand-written loop (`ManualFsm`) and a declared machine (`MacroFsm`)
that behave the same way, and prints the state each one reaches.

```
asyncfsm-orders [--host HOST] [--port PORT]
```

This serves order machines over HTTP with `aiohttp`. The defaults are
`0.0.0.0` and port `3000`. Each order runs its own `OrderFsm` through
`Created → Validated → Charged → Shipped`. An `Error` event fails any order
that has not shipped yet.

| Method and path | Effect |
| --- | --- |
| `POST /orders` | Creates an order from a body `{"id": ..., "items": [...], "total": ...}` |
| `POST /orders/{id}/validate` | Sends `Validate` to the order |
| `POST /orders/{id}/charge` | Sends `Charge` to the order |
| `POST /orders/{id}/ship` | Sends `Ship` to the order |
| `GET /orders/{id}` | Returns the name of the order's current state |

`OrderRegistry` keeps the handles. `create_app(registry)` builds the
application, so you can mount it in your own server.

## What it does not do

- The order service keeps orders only in memory. Nothing is stored, and every
  order is lost when the process stops.
- The HTTP routes send events but do not expose the `Error` event.
- Machines are checked when the class is defined, not by a static type
  checker.