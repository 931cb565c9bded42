"""Unit tests for the operation ledger."""

import threading

from common.ledger import OperationLedger
from common.types import ChangeEvent, ChangeKind, Direction, OperationFamily, OperationKey, key_for_change


WRITE_A = OperationKey(OperationFamily.WRITE, 'a.txt')


class TestLedgerWindow:
    """Test registration expiry."""

    def test_registered_key_is_active(self, fake_clock):
        ledger = OperationLedger(window_seconds=0.5, clock=fake_clock)

        ledger.register(WRITE_A, Direction.INBOUND)

        assert ledger.is_active(WRITE_A, Direction.INBOUND)

    def test_key_expires_after_window(self, fake_clock):
        ledger = OperationLedger(window_seconds=0.5, clock=fake_clock)
        ledger.register(WRITE_A, Direction.INBOUND)

        fake_clock.advance(0.49)
        assert ledger.is_active(WRITE_A, Direction.INBOUND)

        fake_clock.advance(0.02)
        assert not ledger.is_active(WRITE_A, Direction.INBOUND)
        assert len(ledger) == 0

    def test_reregister_extends_deadline(self, fake_clock):
        ledger = OperationLedger(window_seconds=0.5, clock=fake_clock)
        ledger.register(WRITE_A, Direction.INBOUND)
        fake_clock.advance(0.4)
        ledger.register(WRITE_A, Direction.INBOUND)
        fake_clock.advance(0.4)

        assert ledger.is_active(WRITE_A, Direction.INBOUND)

    def test_release_before_deadline(self, fake_clock):
        ledger = OperationLedger(clock=fake_clock)
        ledger.register(WRITE_A, Direction.OUTBOUND)

        assert ledger.release(WRITE_A, Direction.OUTBOUND) is True
        assert ledger.release(WRITE_A, Direction.OUTBOUND) is False
        assert not ledger.is_active(WRITE_A, Direction.OUTBOUND)

    def test_prune_drops_only_expired(self, fake_clock):
        ledger = OperationLedger(window_seconds=1.0, clock=fake_clock)
        ledger.register(WRITE_A, Direction.INBOUND)
        fake_clock.advance(0.8)
        ledger.register(OperationKey(OperationFamily.DELETE, 'b'), Direction.INBOUND)
        fake_clock.advance(0.3)

        assert ledger.prune() == 1
        assert len(ledger) == 1


class TestLedgerKeys:
    """Test key identity and direction separation."""

    def test_directions_are_independent(self, fake_clock):
        ledger = OperationLedger(clock=fake_clock)
        ledger.register(WRITE_A, Direction.OUTBOUND)

        assert not ledger.is_active(WRITE_A, Direction.INBOUND)
        assert ledger.is_active(WRITE_A, Direction.OUTBOUND)

    def test_families_are_distinct(self, fake_clock):
        ledger = OperationLedger(clock=fake_clock)
        ledger.register(WRITE_A, Direction.INBOUND)

        assert not ledger.is_active(OperationKey(OperationFamily.DELETE, 'a.txt'), Direction.INBOUND)

    def test_owner_is_recorded(self, fake_clock):
        ledger = OperationLedger(clock=fake_clock)
        ledger.register(WRITE_A, Direction.INBOUND, owner='session-1')

        marker = ledger.lookup(WRITE_A, Direction.INBOUND)

        assert marker.owner == 'session-1'

    def test_register_all(self, fake_clock):
        ledger = OperationLedger(clock=fake_clock)
        keys = [OperationKey(OperationFamily.DELETE, p) for p in ('d', 'd/x', 'd/y')]

        ledger.register_all(keys, Direction.INBOUND, owner='s')

        assert all(ledger.is_active(k, Direction.INBOUND) for k in keys)

    def test_added_and_modified_share_write_family(self):
        added = key_for_change(ChangeEvent(kind=ChangeKind.ADDED, path='a.txt'))
        modified = key_for_change(ChangeEvent(kind=ChangeKind.MODIFIED, path='a.txt'))
        dir_deleted = key_for_change(ChangeEvent(kind=ChangeKind.DIR_DELETED, path='a.txt'))

        assert added == modified == WRITE_A
        assert dir_deleted.family == OperationFamily.DELETE

    def test_concurrent_registration(self):
        ledger = OperationLedger(window_seconds=60)

        def worker(n):
            for i in range(200):
                ledger.register(OperationKey(OperationFamily.WRITE, f'{n}/{i}'), Direction.INBOUND)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(ledger) == 800
