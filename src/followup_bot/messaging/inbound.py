"""
Inbound text helpers: vehicle hints and seller commands.

The bot accepts any vehicle parser with the same signature as
:func:`parse_vehicle_info`.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from followup_bot.core.models import CommandsConfig

_YEAR = re.compile(r"\b(19\d{2}|20\d{2})\b")
_DASHES = re.compile(r"[\-–—]+")
_SPACES = re.compile(r"\s+")


@dataclass
class VehicleInfo:
    """Year/model hints extracted from a message."""
    year: Optional[int] = None
    model: str = ""


VehicleParser = Callable[[str], VehicleInfo]


def parse_vehicle_info(text: str) -> VehicleInfo:
    """Pull a 4-digit year and a rough model string out of free text.

    Examples:
        >>> parse_vehicle_info("Corolla 2019")
        VehicleInfo(year=2019, model='Corolla')
        >>> parse_vehicle_info("  ")
        VehicleInfo(year=None, model='')
    """
    t = (text or "").strip()
    if not t:
        return VehicleInfo()

    match = _YEAR.search(t)
    year = int(match.group(1)) if match else None

    model = _YEAR.sub("", t)
    model = _DASHES.sub(" ", model)
    model = _SPACES.sub(" ", model).strip()
    return VehicleInfo(year=year, model=model)


class SellerCommand(str, Enum):
    """Actions a seller can trigger by typing a command into a chat."""
    STOP = "stop"
    PAUSE = "pause"
    CLIENT = "client"
    REMOVE = "remove"
    BOT_OFF = "bot_off"


def match_command(text: str, commands: CommandsConfig) -> Optional[SellerCommand]:
    """Match a seller-typed message against the configured command words.

    Matching is exact after trimming and upper-casing; empty command words
    never match.
    """
    typed = (text or "").strip().upper()
    if not typed:
        return None
    for command in SellerCommand:
        word = (getattr(commands, command.value) or "").strip().upper()
        if word and typed == word:
            return command
    return None
