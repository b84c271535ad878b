"""CLI command modules for Custodian.

Each module exposes a ``register(subparsers)`` function that wires up
its argparse sub-command and sets ``parser.set_defaults(func=handler)``.
"""

from . import deletions, encrypt, exports, keygen, retention, schema, tick
from .deletions import cmd_deletions
from .encrypt import cmd_encrypt_existing
from .exports import cmd_exports
from .keygen import cmd_keygen
from .retention import cmd_retention
from .schema import cmd_init
from .tick import cmd_tick

# All command modules with register() functions, in registration order.
COMMAND_MODULES = [
    keygen,
    schema,
    tick,
    retention,
    deletions,
    exports,
    encrypt,
]

__all__ = [
    "COMMAND_MODULES",
    "cmd_deletions",
    "cmd_encrypt_existing",
    "cmd_exports",
    "cmd_init",
    "cmd_keygen",
    "cmd_retention",
    "cmd_tick",
]
