# voteintegrity/operations/cleanup.py

import logging
import threading
from datetime import timedelta

from voteintegrity.clock import utcnow

logger = logging.getLogger(__name__)

# Periodic housekeeping. The scheduler owns no global state: the app factory
# builds one with its jobs and starts it explicitly, and tests drive
# run_once() directly.


class CleanupScheduler:
    def __init__(self, jobs, interval_seconds=3600, app=None):
        """
        jobs: mapping of job name -> zero-argument callable returning a count
        interval_seconds: pause between runs once started
        app: Flask app whose context the jobs run in, when they touch the database
        """
        self.jobs = dict(jobs)
        self.interval_seconds = interval_seconds
        self.app = app
        self._stop = threading.Event()
        self._thread = None

    def run_once(self):
        results = {}
        for name, job in self.jobs.items():
            try:
                if self.app is not None:
                    with self.app.app_context():
                        results[name] = job()
                else:
                    results[name] = job()
                logger.info("Cleanup job %s removed %s entries", name, results[name])
            except Exception as e:
                # One failing job must not stop the others
                logger.error("Cleanup job %s failed: %s", name, e)
                results[name] = None
        return results

    def _loop(self):
        while not self._stop.wait(self.interval_seconds):
            self.run_once()

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="cleanup-scheduler", daemon=True)
        self._thread.start()
        logger.info("Cleanup scheduler started, every %ss", self.interval_seconds)

    def stop(self, timeout=5):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()


def prune_risk_history(history, retention_hours, clock=utcnow):
    """Job factory: drop fingerprint and activity rows older than the retention window."""
    def job():
        return history.prune(clock() - timedelta(hours=retention_hours))
    return job
