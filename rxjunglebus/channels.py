"""Stream kinds and channel naming.

A logical subscription ``<id>`` maps onto three transport channels:

    query:<id>:control     status / control messages
    query:<id>:mempool     unconfirmed transactions
    query:<id>:<height>    confirmed transactions from block ``<height>``

The names are part of the server contract and must not change.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

_CURSOR_RE = re.compile(r"^\d+$")


class StreamKind(Enum):
    """The three logical streams behind one subscription."""

    DATA = "data"
    CONTROL = "control"
    MEMPOOL = "mempool"


def control_channel(subscription_id: str) -> str:
    return f"query:{subscription_id}:control"


def mempool_channel(subscription_id: str) -> str:
    return f"query:{subscription_id}:mempool"


def data_channel(subscription_id: str, block: int) -> str:
    return f"query:{subscription_id}:{block}"


def parse_cursor(channel: str) -> int | None:
    """Return the block height embedded in a data channel name.

    ``None`` when the third segment is missing or not purely numeric (control
    and mempool channels).
    """
    parts = channel.split(":")
    if len(parts) < 3 or not _CURSOR_RE.match(parts[2]):
        return None
    return int(parts[2])


@dataclass(frozen=True)
class ActiveStreams:
    """Which streams a subscription attaches, decided once at subscribe time.

    Control and data always travel together because control messages drive
    the data cursor.
    """

    data: bool = False
    control: bool = False
    mempool: bool = False

    @classmethod
    def from_callbacks(
        cls, on_publish: Any | None, on_mempool: Any | None
    ) -> "ActiveStreams":
        with_blocks = on_publish is not None
        return cls(
            data=with_blocks,
            control=with_blocks,
            mempool=on_mempool is not None,
        )

    def kinds(self) -> list[StreamKind]:
        """Active kinds in attach order: mempool first, then control, then data."""
        kinds: list[StreamKind] = []
        if self.mempool:
            kinds.append(StreamKind.MEMPOOL)
        if self.control:
            kinds.append(StreamKind.CONTROL)
        if self.data:
            kinds.append(StreamKind.DATA)
        return kinds
