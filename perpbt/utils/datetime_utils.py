#!filepath: perpbt/utils/datetime_utils.py
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Union

MS_PER_SECOND = 1_000
MS_PER_MINUTE = 60_000
MS_PER_HOUR = 3_600_000
MS_PER_DAY = 86_400_000


class DateTimeUtils:
    """
    All replay time is epoch milliseconds, UTC.
    Perpetual venues trade 24/7, so a "trading day" is the UTC calendar date.
    """

    TZ = timezone.utc

    @classmethod
    def parse(cls, ts: Union[int, float, str, datetime]) -> datetime:
        if isinstance(ts, datetime):
            return ts.astimezone(cls.TZ) if ts.tzinfo else ts.replace(tzinfo=cls.TZ)

        if isinstance(ts, (int, float)):
            return datetime.fromtimestamp(ts / MS_PER_SECOND, cls.TZ)

        if isinstance(ts, str):
            s = ts.strip().replace("Z", "+00:00")
            try:
                return cls.parse(datetime.fromisoformat(s))
            except ValueError as exc:
                raise ValueError(f"无法解析时间字符串: {ts}") from exc

        raise TypeError(f"不支持的时间类型: {type(ts)}")

    @classmethod
    def to_ms(cls, ts: Union[int, float, str, datetime]) -> int:
        if isinstance(ts, (int, float)) and not isinstance(ts, bool):
            return int(ts)
        dt = cls.parse(ts)
        return int(round(dt.timestamp() * MS_PER_SECOND))

    @classmethod
    def day_key(cls, ts_ms: int) -> date:
        """UTC trading day of a bar timestamp."""
        return cls.parse(int(ts_ms)).date()

    @classmethod
    def iso(cls, ts_ms: int | None) -> str | None:
        if ts_ms is None:
            return None
        return cls.parse(int(ts_ms)).isoformat().replace("+00:00", "Z")
