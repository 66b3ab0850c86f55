"""dbgsync package root."""

from dbgsync.exceptions import DebuginfoError, NeverThrown
from dbgsync.invariants import never

__all__ = ["__version__", "DebuginfoError", "NeverThrown", "never"]

__version__ = "0.1.0"
