# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""
The build coordinator.

One BuildCoordinator exists per process. It owns the bounded task queue and
the fixed pool of worker threads running builds, keeps track of the builds in
flight and turns SIGINT/SIGTERM into a single cancellation event every build
watches.
"""

from contextlib import contextmanager
import logging
import queue
import signal
import threading

from edge_build_service import conf
from edge_build_service.errors import FatalPersistenceError

log = logging.getLogger(__name__)


class STOP_WORK(object):
    """ A sentinel value, indicating that work should be stopped. """
    pass


class BuildWorker(threading.Thread):
    """ Runs queued tasks one after another until it receives STOP_WORK. """

    def __init__(self, coordinator, work_queue, *args, **kwargs):
        self.coordinator = coordinator
        self.work_queue = work_queue
        super(BuildWorker, self).__init__(*args, **kwargs)
        self.daemon = True

    def run(self):
        while True:
            task = self.work_queue.get()
            try:
                if task is STOP_WORK:
                    log.info("Worker thread received STOP_WORK, shutting down...")
                    break

                func, args = task
                log.debug("Calling   %s%r", func.__name__, args)
                try:
                    func(*args)
                except FatalPersistenceError:
                    log.critical("Unable to record a build failure, stopping all builds")
                    self.coordinator.cancel()
                    break
                except Exception:
                    log.exception("Failed while running %s%r", func.__name__, args)
                log.debug("Done with %s%r", func.__name__, args)
            finally:
                self.coordinator._task_done(task)
                self.work_queue.task_done()


class BuildCoordinator(object):
    """
    Bounded, cancellable executor of build tasks.

    :param database: Database the tasks take their sessions from.
    :param int num_workers: fixed number of worker threads.
    :param int queue_size: maximum number of tasks waiting for a worker;
        submit() blocks while the queue is full.
    """

    def __init__(self, database, num_workers=None, queue_size=None, config=None):
        self.config = config or conf
        self.database = database
        self.num_workers = num_workers or self.config.num_workers
        self.queue_size = queue_size or self.config.queue_size
        self.cancelled = threading.Event()
        self.work_queue = queue.Queue(maxsize=self.queue_size)
        self._lock = threading.Lock()
        self._in_flight = {}
        self._pending = 0
        self._workers = []
        self._stopped = False

    def __repr__(self):
        return "<BuildCoordinator workers=%d, queue_size=%d, in_flight=%d>" % (
            self.num_workers, self.queue_size, len(self._in_flight))

    def start(self):
        """ Starts the worker threads, sweeping stuck builds first if configured to. """
        if self._workers:
            return
        if self.config.recover_stuck_builds:
            from edge_build_service.scheduler.recovery import recover_stuck_builds

            with self.database.session_scope() as session:
                recover_stuck_builds(session, self.config.stuck_build_timeout)

        for i in range(self.num_workers):
            worker = BuildWorker(self, self.work_queue, name="build-worker-%d" % i)
            worker.start()
            self._workers.append(worker)
        log.info("Started %r", self)

    def submit(self, func, *args):
        """ Queues func(*args), blocking while the queue is full. """
        if self._stopped or self.cancelled.is_set():
            raise RuntimeError("%r is shutting down, not accepting %s" % (self, func.__name__))
        with self._lock:
            self._pending += 1
        self.work_queue.put((func, args))

    def _task_done(self, task):
        if task is STOP_WORK:
            return
        with self._lock:
            self._pending -= 1

    @property
    def idle(self):
        with self._lock:
            return self._pending == 0 and not self._in_flight

    @property
    def in_flight(self):
        with self._lock:
            return list(self._in_flight)

    @contextmanager
    def track(self, key, on_cancel=None):
        """
        Registers an in-flight build under `key` for the duration of the
        block. `on_cancel` is called once if the process is cancelled while
        the build is registered: by cancel_in_flight(), or on leaving the
        block when cancel_in_flight() did not release the entry first.
        """
        with self._lock:
            if key in self._in_flight:
                raise RuntimeError("%r is already in flight" % (key,))
            self._in_flight[key] = on_cancel
        try:
            yield
        finally:
            with self._lock:
                registered = key in self._in_flight
                on_cancel = self._in_flight.pop(key, None)
            if registered and self.cancelled.is_set():
                self._run_on_cancel(key, on_cancel)

    def cancel(self):
        self.cancelled.set()

    def cancel_in_flight(self):
        """ Runs the cancel callback of every registered build and releases it. """
        with self._lock:
            entries = list(self._in_flight.items())
            self._in_flight.clear()
        for key, on_cancel in entries:
            self._run_on_cancel(key, on_cancel)

    def _run_on_cancel(self, key, on_cancel):
        if on_cancel is None:
            return
        log.warning("Cancelling in-flight build %r", key)
        try:
            on_cancel()
        except Exception:
            log.exception("Failed to cancel in-flight build %r", key)

    def install_signal_handlers(self, signals=(signal.SIGINT, signal.SIGTERM)):
        """ Must be called from the main thread. """
        for signum in signals:
            signal.signal(signum, self._handle_signal)

    def _handle_signal(self, signum, frame):
        log.warning("Received signal %d, cancelling builds", signum)
        self.cancelled.set()

    def wait_idle(self):
        self.work_queue.join()

    def run_until_cancelled(self, exit_when_idle=False, check_interval=1):
        """
        Blocks until the cancellation event fires, or until no task is left
        when `exit_when_idle` is set. On cancellation the in-flight builds
        are cancelled. The workers are stopped in both cases.
        """
        while not self.cancelled.wait(check_interval):
            if exit_when_idle and self.idle:
                break
        if self.cancelled.is_set():
            self.cancel_in_flight()
        self.stop()

    def stop(self, wait=True):
        if self._stopped:
            return
        self._stopped = True
        if self.cancelled.is_set():
            # Drop what did not start yet.
            while True:
                try:
                    task = self.work_queue.get_nowait()
                except queue.Empty:
                    break
                self._task_done(task)
                self.work_queue.task_done()
        for worker in self._workers:
            self.work_queue.put(STOP_WORK)
        if wait:
            for worker in self._workers:
                worker.join()
        log.info("Stopped %r", self)
