"""Client side of a terminal session: an emulator bound to one broker connection."""

from .controller import TerminalController, fit_dimensions, initial_dimensions
from .emulator import Emulator

__all__ = ["Emulator", "TerminalController", "fit_dimensions", "initial_dimensions"]
