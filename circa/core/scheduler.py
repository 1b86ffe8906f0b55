#!/usr/bin/env python

"""
    Sweep scheduler for Circa.

    Runs daily jobs at a fixed time of day, reading time from an injected
    clock. `tick()` does one round of due-checks and is what the background
    thread calls every `poll_interval` seconds; tests call it directly after
    advancing a `FrozenClock`.

    A job still running when its next slot comes round is not started a
    second time; that slot is skipped.

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""

import datetime
import logging
import threading

logger = logging.getLogger(__name__)


def parse_time_of_day(value):
    if isinstance(value, datetime.time):
        return value
    hours, _, minutes = str(value).partition(':')
    return datetime.time(int(hours), int(minutes or 0))


def next_occurrence(at, now):
    """The first moment at or after `now` whose time of day is `at`."""
    candidate = datetime.datetime.combine(now.date(), at)
    if candidate < now:
        candidate += datetime.timedelta(days=1)
    return candidate


class Job:

    def __init__(self, name, at, task, now):
        self.name = name
        self.at = parse_time_of_day(at)
        self.task = task
        self.next_run = next_occurrence(self.at, now)
        self.last_run = None
        self.runs = 0
        self.skipped = 0
        self._running = threading.Lock()

    @property
    def running(self):
        return self._running.locked()

    def run(self):
        try:
            self.task()
        except Exception:
            logger.exception(f"Scheduled job {self.name} failed")
        finally:
            self._running.release()


class SweepScheduler:

    def __init__(self, clock, poll_interval=30, threaded=True):
        self.clock = clock
        self.poll_interval = poll_interval
        self.threaded = threaded
        self.jobs = {}
        self._stop = threading.Event()
        self._thread = None
        self._workers = []

    def daily(self, name, at, task):
        self.jobs[name] = Job(name, at, task, self.clock.now())
        return self.jobs[name]

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    def tick(self):
        """Starts every job that has fallen due; returns the names started."""
        now = self.clock.now()
        started = []
        for job in self.jobs.values():
            if now < job.next_run:
                continue
            job.next_run = next_occurrence(job.at, now + datetime.timedelta(microseconds=1))
            if not job._running.acquire(blocking=False):
                job.skipped += 1
                logger.warning(f"Job {job.name} still running; skipping this slot")
                continue
            job.last_run = now
            job.runs += 1
            started.append(job.name)
            if self.threaded:
                worker = threading.Thread(target=job.run, name=f"circa-{job.name}", daemon=True)
                self._workers = [w for w in self._workers if w.is_alive()] + [worker]
                worker.start()
            else:
                job.run()
        return started

    def _loop(self):
        logger.info("Sweep scheduler started")
        while not self._stop.wait(self.poll_interval):
            try:
                self.tick()
            except Exception:
                logger.exception("Sweep scheduler tick failed")
        logger.info("Sweep scheduler stopped")

    def start(self):
        if self.is_running:
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="circa-scheduler", daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout=None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        for worker in self._workers:
            worker.join(timeout)
        self._workers = []
