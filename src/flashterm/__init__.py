"""Flash Terminal - multi-tab shell front end.

The engine (``flashterm.engine``) owns persistent shell processes and SSH
streams per tab; ``flashterm.tui`` is a small Textual front end on top.
"""

from .engine import CommandResult, EngineConfig, OutputEvent, ShellEngine

__all__ = ["CommandResult", "EngineConfig", "OutputEvent", "ShellEngine"]

__version__ = "0.1.0"
