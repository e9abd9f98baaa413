"""witness — run a command and restart it when something changes.

Event sources (recursive file watching, UDP and TCP listeners) feed one
coalescing trigger channel.  A supervisor consumes that channel and restarts
the command, either immediately or once the running instance has finished.

Layers (bottom to top):
    1. Channel    — capacity-1 ExecutionTrigger conduit
    2. Sources    — FileWatcher (worker thread), NetworkWatcher (asyncio tasks)
    3. Watcher    — owns the channel and both sources
    4. Supervisor — child process state machine
    5. CLI        — typer entry point
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

from witness.channel import TRIGGER, ExecutionTrigger, TriggerChannel
from witness.supervisor import Supervisor
from witness.watcher import Watcher

__all__ = [
    "__version__",
    "TRIGGER",
    "ExecutionTrigger",
    "TriggerChannel",
    "Supervisor",
    "Watcher",
]
