"""GRBL Streamer - G-code pipeline and GRBL 1.1 sender.

Tokenizes, parses and preprocesses G-code programs, then streams them to a
GRBL controller under its RX-buffer byte budget.
"""

__version__ = "0.1.0"
__author__ = "Bob Kolbasowski"

from .gcode_program import GcodeProgram, load_program
from .gcode_parser import ModalState, parse_line
from .gcode_preprocessor import Preprocessor
from .gcode_tokenizer import tokenize_line
from .grbl_worker import GrblWorker
from .protocol_engine import ProtocolEngine
from .utils import Settings

__all__ = [
    "GcodeProgram",
    "GrblWorker",
    "ModalState",
    "Preprocessor",
    "ProtocolEngine",
    "Settings",
    "load_program",
    "parse_line",
    "tokenize_line",
]
