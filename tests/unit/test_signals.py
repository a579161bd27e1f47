"""tests/unit/test_signals.py — Console sentinel classification."""

from cvline.process.signals import ProcessSignal, SentinelSignalSource


class TestSentinelSignalSource:
    def setup_method(self):
        self.source = SentinelSignalSource()

    def test_serving(self):
        assert self.source.classify("Entering video thread loop") is ProcessSignal.SERVING

    def test_terminating(self):
        assert self.source.classify("Terminating") is ProcessSignal.TERMINATING

    def test_surrounding_whitespace_ignored(self):
        assert self.source.classify("  Terminating\r") is ProcessSignal.TERMINATING

    def test_partial_match_is_not_a_signal(self):
        assert self.source.classify("Terminating soon") is None
        assert self.source.classify("Entering video") is None

    def test_ordinary_output(self):
        assert self.source.classify("camera opened 320x240") is None

    def test_custom_sentinels(self):
        source = SentinelSignalSource(serving="READY", terminating="BYE")
        assert source.classify("READY") is ProcessSignal.SERVING
        assert source.classify("BYE") is ProcessSignal.TERMINATING
        assert source.classify("Terminating") is None
