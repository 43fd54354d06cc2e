from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, cast

import redis


@dataclass(frozen=True, slots=True)
class Mailbox:
    """Pending notifications for a player with no live connection."""

    player_id: str

    @property
    def key(self) -> str:
        return f"idle:notifications:{self.player_id}"


def publish_to_mailbox(
    *,
    r: redis.Redis,
    mailbox: Mailbox,
    fields: Mapping[str, Any],
    maxlen: int = 200,
    ttl_s: int = 24 * 60 * 60,
) -> str:
    """Append an entry to a player's mailbox stream.

    The stream is capped and expires ``ttl_s`` after the latest entry.
    """

    # Stream values must be flat strings.
    flat = {str(k): "" if v is None else str(v) for k, v in fields.items()}
    with r.pipeline(transaction=True) as pipe:
        pipe.xadd(mailbox.key, flat, maxlen=maxlen, approximate=False)
        pipe.expire(mailbox.key, ttl_s)
        stream_id, _ = pipe.execute()
    return cast(str, stream_id)


def read_mailbox(*, r: redis.Redis, mailbox: Mailbox, count: int = 20) -> list[dict[str, object]]:
    entries = r.xrange(mailbox.key, min="-", max="+", count=count)
    return [{"id": mid, "fields": fields} for mid, fields in entries]
