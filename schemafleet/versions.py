"""Dotted-triple schema versions."""

import re
from dataclasses import dataclass

from schemafleet.errors import InvalidVersion

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


@dataclass(frozen=True, order=True)
class SchemaVersion:
    """MAJOR.MINOR.PATCH, compared component-wise as integers."""

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, value: "str | SchemaVersion") -> "SchemaVersion":
        if isinstance(value, SchemaVersion):
            return value
        if not isinstance(value, str):
            raise InvalidVersion(value)
        match = _VERSION_RE.match(value.strip())
        if not match:
            raise InvalidVersion(value)
        return cls(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    def bump(self) -> "SchemaVersion":
        """Next patch version (used for detector proposals)."""
        return SchemaVersion(self.major, self.minor, self.patch + 1)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


INITIAL_VERSION = SchemaVersion(1, 0, 0)
