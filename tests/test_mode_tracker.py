"""Unit tests for the permission drift tracker."""

import os

import pytest

from common.types import ChangeEvent, ChangeKind
from edge.mode_tracker import ModeTracker

pytestmark = pytest.mark.skipif(os.name == 'nt', reason="POSIX permission bits")


@pytest.fixture
def tracked(tmp_path):
    (tmp_path / 'a.sh').write_text('echo a')
    (tmp_path / 'docs').mkdir()
    (tmp_path / 'docs' / 'b.txt').write_text('b')
    os.chmod(tmp_path / 'a.sh', 0o644)
    os.chmod(tmp_path / 'docs' / 'b.txt', 0o644)

    tracker = ModeTracker(tmp_path)
    tracker.warm(['a.sh', 'docs', 'docs/b.txt'])
    return tracker


class TestModeTracker:
    """Test cache maintenance and polling."""

    def test_warm_stats_paths(self, tracked):
        assert len(tracked) == 3
        assert tracked.get('a.sh') == 0o644

    def test_poll_without_changes(self, tracked):
        assert tracked.poll() == []

    def test_poll_detects_chmod(self, tracked, tmp_path):
        os.chmod(tmp_path / 'a.sh', 0o755)

        events = tracked.poll()

        assert events == [ChangeEvent(kind=ChangeKind.CHMOD, path='a.sh', mode=0o755)]
        assert tracked.get('a.sh') == 0o755
        assert tracked.poll() == []

    def test_poll_drops_vanished(self, tracked, tmp_path):
        (tmp_path / 'a.sh').unlink()

        assert tracked.poll() == []
        assert tracked.get('a.sh') is None

    def test_forget_drops_descendants(self, tracked):
        tracked.forget('docs')

        assert tracked.get('docs') is None
        assert tracked.get('docs/b.txt') is None
        assert tracked.get('a.sh') == 0o644

    def test_move_rekeys_descendants(self, tracked):
        tracked.move('docs', 'papers')

        assert tracked.get('docs/b.txt') is None
        assert tracked.get('papers/b.txt') == 0o644

    def test_observe_reports_only_differences(self, tracked, tmp_path):
        assert tracked.observe('a.sh') is None

        os.chmod(tmp_path / 'a.sh', 0o700)
        assert tracked.observe('a.sh') == 0o700

        (tmp_path / 'new.txt').write_text('n')
        assert tracked.observe('new.txt') is not None

    def test_set_overrides(self, tracked):
        tracked.set('a.sh', 0o600)

        assert tracked.get('a.sh') == 0o600
