"""
Unit tests for the timer based scheduler.
"""
import threading

import pytest
from flask import current_app

from matchmaker.scheduler import Scheduler


@pytest.fixture
def real_scheduler(app):
    scheduler = Scheduler(app)
    yield scheduler
    scheduler.stop()


class TestScheduler:
    """Tests for keyed one-shot and recurring tasks."""

    def test_runs_in_app_context(self, real_scheduler):
        """Tasks run with the application context pushed."""
        done = threading.Event()
        seen = {}

        def task(value):
            seen['value'] = value
            seen['testing'] = current_app.config['TESTING']
            done.set()

        real_scheduler.schedule(('test', 'a'), 0.01, task, 42)

        assert done.wait(2)
        assert seen == {'value': 42, 'testing': True}

    def test_handle_dropped_after_run(self, real_scheduler):
        """A task that ran is no longer pending."""
        done = threading.Event()
        real_scheduler.schedule(('test', 'a'), 0.01, done.set)
        assert done.wait(2)
        # Give the timer thread a moment to finish
        threading.Event().wait(0.05)
        assert not real_scheduler.pending(('test', 'a'))

    def test_reschedule_replaces(self, real_scheduler):
        """Scheduling a pending key cancels the previous task."""
        calls = []
        done = threading.Event()

        real_scheduler.schedule(('test', 'a'), 0.2, calls.append, 'first')
        real_scheduler.schedule(('test', 'a'), 0.01, lambda: (calls.append('second'), done.set()))

        assert done.wait(2)
        threading.Event().wait(0.3)
        assert calls == ['second']

    def test_cancel(self, real_scheduler):
        """Cancelled tasks never run."""
        calls = []
        real_scheduler.schedule(('test', 'a'), 0.05, calls.append, 'x')

        assert real_scheduler.cancel(('test', 'a')) is True
        assert real_scheduler.cancel(('test', 'a')) is False
        threading.Event().wait(0.15)
        assert calls == []

    def test_cancel_entity(self, real_scheduler):
        """Every task of an entity is dropped, others are kept."""
        real_scheduler.schedule(('pick-timer', 'l_1'), 5, print)
        real_scheduler.schedule(('lobby-eval', 'l_1'), 5, print)
        real_scheduler.schedule(('lobby-eval', 'l_2'), 5, print)

        assert real_scheduler.cancel_entity('l_1') == 2
        assert not real_scheduler.pending(('pick-timer', 'l_1'))
        assert real_scheduler.pending(('lobby-eval', 'l_2'))

    def test_every_repeats_after_failure(self, real_scheduler):
        """A failing recurring task is logged and keeps its schedule."""
        runs = []
        done = threading.Event()

        def tick():
            runs.append(1)
            if len(runs) >= 3:
                done.set()
            raise RuntimeError("boom")

        real_scheduler.every(('sweep', 'test'), 0.01, tick)

        assert done.wait(2)
        real_scheduler.cancel(('sweep', 'test'))

    def test_stopped_scheduler_ignores_new_tasks(self, app):
        """Nothing is scheduled after stop."""
        scheduler = Scheduler(app)
        scheduler.stop()
        scheduler.schedule(('test', 'a'), 0.01, print)
        assert not scheduler.pending(('test', 'a'))
