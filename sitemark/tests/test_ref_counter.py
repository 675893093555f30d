"""
Unit tests for the Reference Number Allocator.

Run with: python -m pytest sitemark/tests/test_ref_counter.py -v
"""

import threading
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import sessionmaker

from sitemark.db import FileRecord, RefCounter, StrokeRecord, PageRecord
from sitemark.errors import RefCounterCorruptError, RefCounterExhaustedError
from sitemark.services.ref_counter import CounterConflict, RefCounterAllocator

FILE_ID = "f" * 40


@pytest.fixture
def file_record(session_factory):
    session = session_factory()
    session.add(FileRecord(id=FILE_ID, file_url="gs://b/plan.pdf", file_name="plan.pdf"))
    session.commit()
    session.close()
    return FILE_ID


def set_counter(session_factory, value):
    session = session_factory()
    session.merge(RefCounter(file_id=FILE_ID, last_ref=value))
    session.commit()
    session.close()


class TestAllocateNext:
    """Tests for allocate_next() and current()."""

    def test_first_allocation_is_one(self, session_factory, file_record):
        """A file with no counter row starts at 1."""
        allocator = RefCounterAllocator(session_factory)
        assert allocator.current(file_record) == 0
        assert allocator.allocate_next(file_record) == 1
        assert allocator.current(file_record) == 1

    def test_sequential_allocations(self, session_factory, file_record):
        """Values increase by one with no gaps."""
        allocator = RefCounterAllocator(session_factory)
        assert [allocator.allocate_next(file_record) for _ in range(5)] == [1, 2, 3, 4, 5]

    def test_continues_from_stored_value(self, session_factory, file_record):
        set_counter(session_factory, 41)
        allocator = RefCounterAllocator(session_factory)
        assert allocator.allocate_next(file_record) == 42

    def test_concurrent_allocations_are_unique(self, session_factory, file_record):
        """Parallel callers never receive the same value."""
        allocator = RefCounterAllocator(session_factory, max_attempts=50)
        results = []
        lock = threading.Lock()

        def worker():
            value = allocator.allocate_next(file_record)
            with lock:
                results.append(value)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == [1, 2, 3, 4, 5, 6]


class TestCorruptCounter:
    """Tests for unusable stored counter values."""

    def test_negative_counter_is_rejected(self, session_factory, file_record):
        """A negative counter raises instead of issuing a value."""
        set_counter(session_factory, -5)
        allocator = RefCounterAllocator(session_factory)
        with pytest.raises(RefCounterCorruptError):
            allocator.allocate_next(file_record)
        with pytest.raises(RefCounterCorruptError):
            allocator.current(file_record)

    def test_corrupt_counter_is_not_retried(self, session_factory, file_record):
        set_counter(session_factory, -1)
        allocator = RefCounterAllocator(session_factory, max_attempts=5)
        with patch.object(RefCounterAllocator, "_check_current", wraps=allocator._check_current) as check:
            with pytest.raises(RefCounterCorruptError):
                allocator.allocate_next(file_record)
        assert check.call_count == 1


class TestRunWithRefNo:
    """Tests for run_with_ref_no()."""

    def write_stroke(self, session, ref_no):
        if session.get(PageRecord, (FILE_ID, 1)) is None:
            session.add(PageRecord(file_id=FILE_ID, page_number=1))
            session.flush()
        session.add(StrokeRecord(file_id=FILE_ID, page_number=1, ref_no=ref_no, data={"refNo": ref_no}))
        return f"stroke-{ref_no}"

    def test_write_shares_the_transaction(self, session_factory, file_record):
        """The dependent write commits together with the counter."""
        allocator = RefCounterAllocator(session_factory)
        assert allocator.run_with_ref_no(file_record, self.write_stroke) == "stroke-1"

        session = session_factory()
        refs = session.execute(select(StrokeRecord.ref_no)).scalars().all()
        session.close()
        assert refs == [1]

    def test_failed_write_rolls_back_counter(self, session_factory, file_record):
        """An exception in the write leaves neither a record nor a consumed refNo."""
        allocator = RefCounterAllocator(session_factory)

        def failing(session, ref_no):
            self.write_stroke(session, ref_no)
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            allocator.run_with_ref_no(file_record, failing)

        assert allocator.current(file_record) == 0
        assert allocator.allocate_next(file_record) == 1

    def test_exhaustion_raises_and_leaves_nothing(self, session_factory, file_record):
        """Persistent conflicts end in RefCounterExhaustedError with no stroke written."""
        allocator = RefCounterAllocator(session_factory, max_attempts=3)
        with patch.object(RefCounterAllocator, "bump", side_effect=CounterConflict("x")) as bump:
            with pytest.raises(RefCounterExhaustedError):
                allocator.run_with_ref_no(file_record, self.write_stroke)
        assert bump.call_count == 3

        session = session_factory()
        assert session.execute(select(StrokeRecord)).scalars().all() == []
        session.close()


@pytest.fixture
def unlocked_factory(engine):
    """Sessions on the same database whose statements each commit on their own,
    so reading the counter takes no lock and another writer can slip in."""
    unlocked = create_engine(str(engine.url), connect_args={"check_same_thread": False, "timeout": 30})

    @event.listens_for(unlocked, "connect")
    def _autocommit(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    yield sessionmaker(bind=unlocked)
    unlocked.dispose()


def racing(factory, other_writer):
    """Wrap a session factory so other_writer commits right after the first counter read."""
    state = {"raced": False}

    def make_session():
        session = factory()
        real_execute = session.execute

        def execute(statement, *args, **kwargs):
            result = real_execute(statement, *args, **kwargs)
            if state["raced"]:
                return result
            state["raced"] = True
            frozen = result.freeze()
            other_writer()
            return frozen()

        session.execute = execute
        return session

    return make_session


class TestLostRaces:
    """Another writer commits between our read and our write."""

    def test_moved_counter_is_retried(self, session_factory, unlocked_factory, file_record):
        """The compare-and-swap misses, the attempt retries and takes the following refNo."""
        set_counter(session_factory, 4)
        winner = []

        def other_writer():
            winner.append(RefCounterAllocator(session_factory).allocate_next(file_record))

        def write(session, ref_no):
            session.add(PageRecord(file_id=FILE_ID, page_number=ref_no))
            session.flush()
            session.add(StrokeRecord(file_id=FILE_ID, page_number=ref_no, ref_no=ref_no, data={"refNo": ref_no}))
            return ref_no

        allocator = RefCounterAllocator(racing(unlocked_factory, other_writer))
        with patch.object(RefCounterAllocator, "bump", autospec=True, side_effect=RefCounterAllocator.bump) as bump:
            assert allocator.run_with_ref_no(file_record, write) == 6

        assert winner == [5]
        # ours twice, the other writer once
        assert bump.call_count == 3
        assert RefCounterAllocator(session_factory).current(file_record) == 6

        session = session_factory()
        refs = session.execute(select(StrokeRecord.ref_no)).scalars().all()
        session.close()
        assert refs == [6]

    def test_concurrent_first_row_insert_is_retried(self, session_factory, unlocked_factory, file_record):
        """Both writers see no counter row; the losing insert retries and gets 2."""
        winner = []

        def other_writer():
            winner.append(RefCounterAllocator(session_factory).allocate_next(file_record))

        allocator = RefCounterAllocator(racing(unlocked_factory, other_writer))
        assert allocator.allocate_next(file_record) == 2
        assert winner == [1]

        session = session_factory()
        rows = session.execute(select(RefCounter)).scalars().all()
        session.close()
        assert [(r.file_id, r.last_ref) for r in rows] == [(FILE_ID, 2)]
