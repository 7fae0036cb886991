# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
import signal
import threading

import mock
import pytest

from edge_build_service.errors import CommandError, FatalPersistenceError
from edge_build_service.images import ImageService
from edge_build_service.models import (
    STATUS_BUILDING,
    STATUS_ERROR,
    STATUS_SUCCESS,
    Commit,
    Image,
    Repo,
    UpdateTransaction,
)
from edge_build_service.scheduler import tasks
from edge_build_service.scheduler.coordinator import BuildCoordinator

from tests import (
    FakeImageBuilder,
    make_building_image,
    make_commit,
    make_files_service,
    make_update,
    ostree_runner,
)


@pytest.fixture()
def coordinator(database, config):
    coordinator = BuildCoordinator(database, num_workers=2, queue_size=2, config=config)
    yield coordinator
    coordinator.cancel()
    coordinator.stop()


class TestBuildCoordinator:

    def test_runs_submitted_tasks(self, coordinator):
        done = []
        coordinator.start()

        for i in range(5):
            coordinator.submit(done.append, i)
        coordinator.wait_idle()

        assert sorted(done) == [0, 1, 2, 3, 4]
        assert coordinator.idle

    def test_fixed_number_of_workers(self, coordinator):
        coordinator.start()
        coordinator.start()

        assert len(coordinator._workers) == 2
        assert all(worker.daemon for worker in coordinator._workers)

    def test_submit_blocks_when_queue_is_full(self, coordinator):
        release = threading.Event()
        started = threading.Semaphore(0)

        def block():
            started.release()
            release.wait(5)

        coordinator.start()
        coordinator.submit(block)
        coordinator.submit(block)
        started.acquire(timeout=5)
        started.acquire(timeout=5)
        # both workers are busy, the queue holds two more
        coordinator.submit(block)
        coordinator.submit(block)

        submitter = threading.Thread(target=coordinator.submit, args=(block,))
        submitter.start()
        submitter.join(0.2)
        assert submitter.is_alive()

        release.set()
        submitter.join(5)
        assert not submitter.is_alive()
        coordinator.wait_idle()

    def test_failing_task_does_not_stop_worker(self, coordinator):
        done = []

        def fail():
            raise RuntimeError("boom")

        coordinator.start()
        coordinator.submit(fail)
        coordinator.submit(done.append, 1)
        coordinator.wait_idle()

        assert done == [1]
        assert not coordinator.cancelled.is_set()

    def test_fatal_persistence_error_cancels_everything(self, coordinator):
        def fatal():
            raise FatalPersistenceError("database gone")

        coordinator.start()
        coordinator.submit(fatal)
        coordinator.wait_idle()

        assert coordinator.cancelled.is_set()
        with pytest.raises(RuntimeError):
            coordinator.submit(fatal)

    def test_track(self, coordinator):
        with coordinator.track(("image", 1)):
            assert coordinator.in_flight == [("image", 1)]
            assert not coordinator.idle
            with pytest.raises(RuntimeError):
                with coordinator.track(("image", 1)):
                    pass
        assert coordinator.in_flight == []

    def test_cancel_in_flight(self, coordinator):
        on_cancel = mock.Mock()
        failing = mock.Mock(side_effect=RuntimeError("boom"))

        with coordinator.track(("image", 1), on_cancel):
            with coordinator.track(("update", 2), failing):
                coordinator.cancel_in_flight()
                coordinator.cancel_in_flight()

        on_cancel.assert_called_once_with()
        failing.assert_called_once_with()
        assert coordinator.in_flight == []

    def test_track_cancels_when_leaving_after_signal(self, coordinator):
        on_cancel = mock.Mock()

        with coordinator.track(("image", 1), on_cancel):
            coordinator._handle_signal(signal.SIGTERM, None)
        coordinator.cancel_in_flight()

        on_cancel.assert_called_once_with()
        assert coordinator.in_flight == []

    @mock.patch("edge_build_service.scheduler.coordinator.signal.signal")
    def test_signal_handlers(self, signal_mock, coordinator):
        coordinator.install_signal_handlers()

        handled = [c[0][0] for c in signal_mock.call_args_list]
        assert handled == [signal.SIGINT, signal.SIGTERM]

        handler = signal_mock.call_args_list[0][0][1]
        handler(signal.SIGTERM, None)
        assert coordinator.cancelled.is_set()

    def test_stop_drops_pending_tasks_when_cancelled(self, coordinator):
        done = []
        coordinator.submit(done.append, 1)
        coordinator.cancel()

        coordinator.stop()

        assert done == []
        assert coordinator.idle

    def test_run_until_cancelled_exits_when_idle(self, coordinator):
        done = []
        coordinator.start()
        coordinator.submit(done.append, 1)

        coordinator.run_until_cancelled(exit_when_idle=True, check_interval=0.01)

        assert done == [1]
        assert all(not worker.is_alive() for worker in coordinator._workers)

    def test_start_recovers_stuck_builds(self, database, config):
        config.set_item("recover_stuck_builds", True)
        coordinator = BuildCoordinator(database, num_workers=1, queue_size=1, config=config)

        with mock.patch("edge_build_service.scheduler.recovery.recover_stuck_builds") as recover:
            coordinator.start()
        coordinator.stop()

        assert recover.call_args[0][1] == config.stuck_build_timeout


def polling_service(coordinator, db_session, config, tmpdir):
    """ ImageService whose commit stays BUILDING, with an event set on the first poll. """
    config.set_item("poll_interval", 5)
    builder = FakeImageBuilder(commit_statuses=["building"])
    polled = threading.Event()
    get_commit_status = builder.get_commit_status

    def poll(image):
        polled.set()
        return get_commit_status(image)

    builder.get_commit_status = poll
    service = ImageService(
        db_session, coordinator=coordinator, image_builder=builder,
        files_service=make_files_service(tmpdir), runner=ostree_runner(), config=config)
    return service, polled


def assert_all_error(db_session, image_id):
    db_session.expire_all()
    image = db_session.get(Image, image_id)
    assert image.status == STATUS_ERROR
    assert image.commit.status == STATUS_ERROR
    assert image.installer.status == STATUS_ERROR


class TestSignalCancellation:

    def test_signal_during_poll(self, coordinator, db_session, config, tmpdir):
        service, polled = polling_service(coordinator, db_session, config, tmpdir)
        image = make_building_image(db_session, ["commit", "installer"])

        coordinator.start()
        coordinator.submit(tasks.post_process_image, service, image.id)
        assert polled.wait(5)
        coordinator._handle_signal(signal.SIGTERM, None)
        coordinator.run_until_cancelled(check_interval=0.01)

        assert coordinator.in_flight == []
        assert_all_error(db_session, image.id)

    def test_signal_when_worker_leaves_before_main_thread(self, coordinator, db_session, config,
                                                          tmpdir):
        service, polled = polling_service(coordinator, db_session, config, tmpdir)
        image = make_building_image(db_session, ["commit", "installer"])

        coordinator.start()
        coordinator.submit(tasks.post_process_image, service, image.id)
        assert polled.wait(5)
        coordinator._handle_signal(signal.SIGTERM, None)
        # the worker returns from its task before the main thread looks at the registry
        coordinator.wait_idle()
        assert coordinator.in_flight == []
        coordinator.run_until_cancelled(check_interval=0.01)

        assert_all_error(db_session, image.id)


class TestTasks:

    def test_post_process_image_on_worker(self, coordinator, db_session, config, tmpdir):
        files = make_files_service(tmpdir)
        runner = ostree_runner()
        service = ImageService(
            db_session, coordinator=coordinator, image_builder=FakeImageBuilder(),
            files_service=files, runner=runner, config=config)
        image = make_building_image(db_session, ["commit"])

        coordinator.start()
        coordinator.submit(tasks.post_process_image, service, image.id)
        coordinator.wait_idle()

        db_session.expire_all()
        image = db_session.get(Image, image.id)
        assert image.status == STATUS_SUCCESS
        assert image.commit.repo.status == STATUS_SUCCESS

    def test_build_update_repo_failure_marks_update(self, coordinator, db_session, tmpdir):
        update = make_update(db_session, old_commits=1)
        runner = ostree_runner()
        runner.when("pull-local", returncode=1, stderr="error: no such object")

        with pytest.raises(CommandError):
            tasks.build_update_repo(coordinator, update.id,
                                    files_service=make_files_service(tmpdir), runner=runner)

        db_session.expire_all()
        update = db_session.get(UpdateTransaction, update.id)
        assert update.status == STATUS_ERROR
        assert update.repo.status == STATUS_ERROR

    def test_import_repo(self, coordinator, db_session, tmpdir):
        commit = make_commit(db_session, ostree_commit="abc", image_build_hash="b1d",
                             build_date="2023-01-02", build_number=7)
        commit.repo = Repo(status=STATUS_BUILDING)
        db_session.commit()

        tasks.import_repo(coordinator, commit.repo.id,
                          files_service=make_files_service(tmpdir), runner=ostree_runner())

        db_session.expire_all()
        repo = db_session.get(Commit, commit.id).repo
        assert repo.status == STATUS_SUCCESS
        assert repo.url
