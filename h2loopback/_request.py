from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Iterator


@dataclasses.dataclass(frozen=True)
class HttpHeaderData:
    name: str
    value: str


@dataclasses.dataclass(frozen=True)
class SettingsEntry:
    """One entry of a SETTINGS frame.

    `setting_id` is usually an `h2.settings.SettingCodes` member, but any
    16-bit identifier is accepted so that tests can send unknown settings.
    """

    setting_id: int
    value: int


HeaderLike = HttpHeaderData | tuple[str, str]


def header_pairs(headers: Iterable[HeaderLike]) -> Iterator[tuple[str, str]]:
    for header in headers:
        if isinstance(header, HttpHeaderData):
            yield header.name, header.value
        else:
            name, value = header
            yield name, value


@dataclasses.dataclass
class HttpRequestData:
    """A request received by the loopback server.

    Attributes:
        method: The :method pseudo-header.
        path: The :path pseudo-header.
        headers: All header fields as received, pseudo-headers included.
        body: The concatenated DATA payloads, if the body was read.
        trailers: Header fields of a trailing HEADERS block, if any.
        stream_id: The stream the request arrived on.
    """

    method: str
    path: str
    headers: list[HttpHeaderData]
    body: bytes = b""
    trailers: list[HttpHeaderData] = dataclasses.field(default_factory=list)
    stream_id: int = 0

    @classmethod
    def from_header_block(
        cls,
        headers: Iterable[tuple[str, str]],
        stream_id: int,
    ) -> HttpRequestData:
        fields = [HttpHeaderData(name, value) for name, value in headers]
        pseudo = {f.name: f.value for f in fields if f.name.startswith(":")}

        return cls(
            method=pseudo.get(":method", ""),
            path=pseudo.get(":path", ""),
            headers=fields,
            stream_id=stream_id,
        )

    def get_header_values(self, name: str) -> list[str]:
        """All values of a header, case-insensitively, in order."""
        name = name.lower()
        return [h.value for h in self.headers if h.name.lower() == name]

    def get_single_header_value(self, name: str) -> str:
        """The value of a header that must appear exactly once.

        Raises:
            AssertionError: If the header is missing or repeated.
        """
        values = self.get_header_values(name)
        if len(values) != 1:
            raise AssertionError(
                f"Expected exactly one {name!r} header, found {len(values)}."
            )
        return values[0]
