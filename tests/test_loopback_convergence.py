"""End-to-end convergence of one hub and two edges over an in-memory link."""

import os
from dataclasses import dataclass

import pytest
import pytest_asyncio

from common.snapshot import build_snapshot
from common.types import ChangeEvent, ChangeKind
from conftest import FakeConnection, drain, make_session
from edge.edge_agent import EdgeAgent, EdgeState
from hub.hub_agent import HubAgent
from hub.session import Session


@dataclass
class Link:
    edge: EdgeAgent
    connection: FakeConnection
    session: Session
    cursor: int = 0


async def pump(hub: HubAgent, links) -> None:
    """Deliver queued messages both ways until every link is quiet."""
    moved = True
    while moved:
        moved = False
        for link in links:
            outgoing = link.connection.sent[link.cursor:]
            link.cursor = len(link.connection.sent)
            for name, payload in outgoing:
                moved = True
                await hub.handle_message(link.session, name, payload)
            for name, payload in drain(link.session):
                moved = True
                await link.edge.handle_hub_message(name, payload)


def tree(root):
    """Map of relative path -> bytes (None for directories)."""
    result = {}
    for entry in build_snapshot(root):
        full = root.joinpath(*entry.path.split('/'))
        result[entry.path] = None if entry.is_directory else full.read_bytes()
    return result


@pytest.fixture
def roots(tmp_path):
    paths = {}
    for name in ('hub', 'edge_a', 'edge_b'):
        path = tmp_path / name
        path.mkdir()
        paths[name] = path.resolve()
    return paths


@pytest_asyncio.fixture
async def system(roots):
    """Hub with a.txt and docs/ plus two connected, synced edges."""
    (roots['hub'] / 'a.txt').write_bytes(b'12345')
    (roots['hub'] / 'docs').mkdir()
    (roots['edge_b'] / 'stale.txt').write_text('stale')

    hub = HubAgent(roots['hub'], suppression_window=5.0, watch=False)
    await hub.start()

    links = []
    for name in ('edge_a', 'edge_b'):
        connection = FakeConnection(name)
        edge = EdgeAgent(roots[name], name, suppression_window=5.0, watch=False)
        edge.attach(connection)
        session = make_session(name)
        await hub.on_connect(session)
        links.append(Link(edge=edge, connection=connection, session=session))

    await pump(hub, links)
    yield hub, links
    await hub.stop()


class TestConvergence:
    """Test replicas converge and no echo traffic is produced."""

    @pytest.mark.asyncio
    async def test_initial_sync_converges(self, system, roots):
        hub, links = system

        for link in links:
            assert link.edge.state == EdgeState.STEADY
        assert tree(roots['edge_a']) == tree(roots['hub'])
        assert tree(roots['edge_b']) == tree(roots['hub'])
        assert tree(roots['hub']) == {'a.txt': b'12345', 'docs': None}

    @pytest.mark.asyncio
    async def test_edge_write_reaches_other_edge_only(self, system, roots):
        hub, (link_a, link_b) = system

        (roots['edge_a'] / 'note.txt').write_bytes(b'from a')
        await link_a.edge.handle_local_event(ChangeEvent(kind=ChangeKind.ADDED, path='note.txt'))
        sent_by_a = len(link_a.connection.sent)
        await pump(hub, [link_a, link_b])

        # hub change source reports the applied write
        await hub.on_local_change(ChangeEvent(kind=ChangeKind.ADDED, path='note.txt'))
        await hub.on_local_change(ChangeEvent(kind=ChangeKind.MODIFIED, path='note.txt'))
        await pump(hub, [link_a, link_b])

        # edge B change source reports its own apply
        sent_by_b = len(link_b.connection.sent)
        await link_b.edge.handle_local_event(ChangeEvent(kind=ChangeKind.ADDED, path='note.txt'))
        await link_b.edge.handle_local_event(ChangeEvent(kind=ChangeKind.MODIFIED, path='note.txt'))
        await pump(hub, [link_a, link_b])

        assert (roots['hub'] / 'note.txt').read_bytes() == b'from a'
        assert (roots['edge_b'] / 'note.txt').read_bytes() == b'from a'
        assert len(link_a.connection.sent) == sent_by_a
        assert len(link_b.connection.sent) == sent_by_b
        assert tree(roots['edge_a']) == tree(roots['hub']) == tree(roots['edge_b'])

    @pytest.mark.asyncio
    async def test_directory_rename_converges(self, system, roots):
        hub, (link_a, link_b) = system
        os.makedirs(roots['edge_a'] / 'docs' / 'img')
        (roots['edge_a'] / 'docs' / 'img' / 'p.png').write_bytes(b'png')
        await link_a.edge.handle_local_event(ChangeEvent(kind=ChangeKind.DIR_ADDED, path='docs/img'))
        await link_a.edge.handle_local_event(ChangeEvent(kind=ChangeKind.ADDED, path='docs/img/p.png'))
        await pump(hub, [link_a, link_b])
        await hub.on_local_change(ChangeEvent(kind=ChangeKind.DIR_ADDED, path='docs/img'))
        await hub.on_local_change(ChangeEvent(kind=ChangeKind.ADDED, path='docs/img/p.png'))
        await pump(hub, [link_a, link_b])

        os.rename(roots['edge_a'] / 'docs', roots['edge_a'] / 'papers')
        await link_a.edge.handle_local_event(ChangeEvent(kind=ChangeKind.RENAMED, path='docs', dest_path='papers'))
        await pump(hub, [link_a, link_b])
        await hub.on_local_change(ChangeEvent(kind=ChangeKind.RENAMED, path='docs', dest_path='papers'))
        await pump(hub, [link_a, link_b])

        expected = {'a.txt': b'12345', 'papers': None, 'papers/img': None, 'papers/img/p.png': b'png'}
        assert tree(roots['hub']) == expected
        assert tree(roots['edge_a']) == expected
        assert tree(roots['edge_b']) == expected

    @pytest.mark.asyncio
    async def test_rename_of_unsent_file_converges(self, system, roots):
        hub, (link_a, link_b) = system
        (roots['edge_a'] / 'draft.txt').write_bytes(b'draft')
        os.rename(roots['edge_a'] / 'draft.txt', roots['edge_a'] / 'final.txt')

        # events are handled only after the file was already renamed
        for event in (
            ChangeEvent(kind=ChangeKind.ADDED, path='draft.txt'),
            ChangeEvent(kind=ChangeKind.MODIFIED, path='draft.txt'),
            ChangeEvent(kind=ChangeKind.RENAMED, path='draft.txt', dest_path='final.txt'),
        ):
            await link_a.edge.handle_local_event(event)
        await pump(hub, [link_a, link_b])
        await hub.on_local_change(ChangeEvent(kind=ChangeKind.ADDED, path='final.txt'))
        await pump(hub, [link_a, link_b])

        assert (roots['hub'] / 'final.txt').read_bytes() == b'draft'
        assert tree(roots['edge_a']) == tree(roots['hub']) == tree(roots['edge_b'])
        assert link_b.connection.operations() == []

    @pytest.mark.asyncio
    async def test_hub_side_delete_reaches_everyone(self, system, roots):
        hub, links = system

        (roots['hub'] / 'a.txt').unlink()
        await hub.on_local_change(ChangeEvent(kind=ChangeKind.DELETED, path='a.txt'))
        await pump(hub, links)

        for link in links:
            assert not (link.edge.root / 'a.txt').exists()
            assert link.connection.operations() == []
