"""Write-ahead log positions.

Postgres prints a log sequence number as two hexadecimal halves of a 64-bit
integer, ``"16/B374D848"``. Positions must be compared as integers: as text,
``"0/A000000"`` would sort before ``"0/9000000"``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Self

from .exceptions import LSNFormatError

# "FFFFFFFF/FFFFFFFF" plus the terminator Postgres allocates for
PG_LSN_MAXLENGTH = 18

_MAX_HALF = 0xFFFFFFFF

_LSN_RE = re.compile(r"(?P<high>[0-9A-Fa-f]{1,8})/(?P<low>[0-9A-Fa-f]{1,8})")


@dataclass(frozen=True, slots=True, order=True)
class LogPosition:
    position: int

    def __post_init__(self) -> None:
        if not 0 <= self.position <= 0xFFFFFFFFFFFFFFFF:
            msg = f"log position {self.position} is out of the 64-bit range"
            raise LSNFormatError(msg)

    @classmethod
    def parse(cls, text: str) -> Self:
        """Parse the ``"X/Y"`` text form.

        Raises
        ------
        LSNFormatError
            When the text is too long or is not two hexadecimal numbers of
            at most 32 bits separated by ``/``.
        """
        if len(text) >= PG_LSN_MAXLENGTH:
            msg = f'LSN "{text}" is longer than {PG_LSN_MAXLENGTH - 1} characters'
            raise LSNFormatError(msg)

        match = _LSN_RE.fullmatch(text)
        if match is None:
            msg = f'invalid LSN "{text}": expected two hexadecimal numbers separated by "/"'
            raise LSNFormatError(msg)

        return cls((int(match["high"], 16) << 32) | int(match["low"], 16))

    @classmethod
    def coerce(cls, value: LogPosition | str | int) -> LogPosition:
        if isinstance(value, LogPosition):
            return value
        if isinstance(value, str):
            return cls.parse(value)
        return cls(value)

    def __str__(self) -> str:
        return f"{self.position >> 32:X}/{self.position & _MAX_HALF:X}"


ZERO_LSN = LogPosition(0)


def has_reached_target_lsn(target: LogPosition | str, current: LogPosition | str) -> bool:
    """Tell whether ``current`` is at or past ``target``."""
    return LogPosition.coerce(current) >= LogPosition.coerce(target)
