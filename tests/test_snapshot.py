"""Unit tests for the directory snapshot builder."""

import os

import pytest

from common.snapshot import build_snapshot, snapshot_paths
from common.types import EntryKind


class TestBuildSnapshot:
    """Test snapshot ordering and filtering."""

    def test_empty_root(self, tmp_path):
        assert build_snapshot(tmp_path) == []

    def test_directories_precede_descendants(self, tmp_path):
        (tmp_path / 'b' / 'c').mkdir(parents=True)
        (tmp_path / 'b' / 'c' / 'deep.txt').write_text('deep')
        (tmp_path / 'a.txt').write_text('hello')
        (tmp_path / 'b' / 'z.txt').write_text('z')

        entries = build_snapshot(tmp_path)
        paths = [e.path for e in entries]

        assert paths == ['a.txt', 'b', 'b/c', 'b/c/deep.txt', 'b/z.txt']
        seen = set()
        for entry in entries:
            parent = entry.path.rsplit('/', 1)[0] if '/' in entry.path else None
            assert parent is None or parent in seen
            seen.add(entry.path)

    def test_files_carry_size(self, tmp_path):
        (tmp_path / 'a.txt').write_bytes(b'12345')
        (tmp_path / 'docs').mkdir()

        entries = {e.path: e for e in build_snapshot(tmp_path)}

        assert entries['a.txt'].kind == EntryKind.FILE
        assert entries['a.txt'].size == 5
        assert entries['docs'].kind == EntryKind.DIRECTORY
        assert entries['docs'].size is None

    def test_hidden_entries_excluded(self, tmp_path):
        (tmp_path / '.git').mkdir()
        (tmp_path / '.git' / 'config').write_text('x')
        (tmp_path / '.env').write_text('secret')
        (tmp_path / 'src').mkdir()
        (tmp_path / 'src' / '.cache').write_text('c')
        (tmp_path / 'src' / 'main.py').write_text('print(1)')

        paths = [e.path for e in build_snapshot(tmp_path)]

        assert paths == ['src', 'src/main.py']

    @pytest.mark.skipif(os.name == 'nt', reason="symlinks need privileges on Windows")
    def test_symlinks_skipped(self, tmp_path):
        (tmp_path / 'real.txt').write_text('data')
        os.symlink(tmp_path / 'real.txt', tmp_path / 'link.txt')

        paths = [e.path for e in build_snapshot(tmp_path)]

        assert paths == ['real.txt']

    def test_missing_root_yields_nothing(self, tmp_path):
        assert build_snapshot(tmp_path / 'gone') == []

    def test_deep_tree_does_not_recurse(self, tmp_path):
        current = tmp_path
        for i in range(300):
            current = current / f'd{i}'
        current.mkdir(parents=True)

        entries = build_snapshot(tmp_path)

        assert len(entries) == 300


class TestSnapshotPaths:
    """Test subtree listing."""

    def test_lists_subtree_relative_to_root(self, tmp_path):
        (tmp_path / 'docs' / 'img').mkdir(parents=True)
        (tmp_path / 'docs' / 'a.md').write_text('a')
        (tmp_path / 'docs' / 'img' / 'b.png').write_bytes(b'\x89')
        (tmp_path / 'other.txt').write_text('o')

        paths = snapshot_paths(tmp_path, 'docs')

        assert paths == ['docs/a.md', 'docs/img', 'docs/img/b.png']

    def test_file_has_no_descendants(self, tmp_path):
        (tmp_path / 'a.txt').write_text('a')

        assert snapshot_paths(tmp_path, 'a.txt') == []
