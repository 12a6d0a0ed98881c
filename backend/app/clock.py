from datetime import date, datetime, timezone


class Clock:
    """UTC wall clock. Handlers take it as a dependency so tests can pin `today()`."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.now().date()


class FixedClock(Clock):
    def __init__(self, at: datetime):
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        self._at = at.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._at


system_clock = Clock()


def get_clock() -> Clock:
    return system_clock
