import datetime
import threading


def to_utc(moment):
    """Naive UTC for `moment`; naive values are taken to be UTC already."""
    if moment is None or moment.tzinfo is None:
        return moment
    return moment.astimezone(datetime.timezone.utc).replace(tzinfo=None)


class SystemClock:
    """Wall-clock time as naive UTC."""

    def now(self):
        return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class FrozenClock:
    """A clock that only moves when told to.

    Used to drive sweeps and due dates through virtual days.
    """

    def __init__(self, start=None):
        self._now = start or SystemClock().now()
        self._lock = threading.Lock()

    def now(self):
        with self._lock:
            return self._now

    def set(self, moment):
        with self._lock:
            self._now = moment

    def advance(self, **delta):
        with self._lock:
            self._now += datetime.timedelta(**delta)
            return self._now
