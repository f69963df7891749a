"""Tests for RecorderConfig handling."""

import logging

from typing_extensions import override

from pyrecord import Recorder, RecorderConfig

from .fixtures.fake_dom import Window


class TestFromConfig:
    def test_defaults(self):
        recorder = Recorder.from_config(RecorderConfig())
        assert recorder.auto_replay is True
        assert recorder.use_finalization is True
        assert recorder.onerror is None

    def test_target_and_onerror(self):
        errors = []
        window = Window()
        recorder = Recorder.from_config(RecorderConfig(onerror=errors.append), target=window)
        assert recorder.target is window
        assert recorder.onerror == errors.append

    def test_debug_sets_package_logger(self):
        logger = logging.getLogger("pyrecord")
        previous = logger.level
        try:
            Recorder.from_config(RecorderConfig(debug=True))
            assert logger.level == logging.DEBUG
        finally:
            logger.setLevel(previous)


class CountingRecorder(Recorder):
    """Subclasses can observe every recorded operation."""

    def __init__(self, *args, **kwargs):
        self.seen = 0
        super().__init__(*args, **kwargs)

    @override
    def record(self, operation):
        self.seen += 1
        super().record(operation)


def test_from_config_respects_subclass():
    recorder = CountingRecorder.from_config(RecorderConfig(auto_replay=False))
    assert isinstance(recorder, CountingRecorder)

    recorder.root.title = "x"
    assert recorder.seen == 1


def test_context_manager_disposes():
    with Recorder(target=Window()) as recorder:
        recorder.root.document.title = "x"
        recorder.flush()
    assert len(recorder.registry) == 1
    assert recorder.port is None
