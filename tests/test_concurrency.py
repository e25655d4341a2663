import gc
import random
import threading

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from kanban import ordering
from kanban.db import Board, Card, ColumnModel, User
from kanban.storage import Storage, StoreError, scope_locks, snapshot


def seed(session_factory, cards_per_column=8):
    with session_factory() as db:
        storage = Storage(db)
        user = storage.create_user("racer@example.com", "racer", "Password123!")
        board = storage.create_board(user.id, "Race")
        left = storage.create_column(board, "Left")
        right = storage.create_column(board, "Right")
        for n in range(cards_per_column):
            storage.create_card(left, f"L{n}", "", None)
            storage.create_card(right, f"R{n}", "", None)
        return left.id, right.id


def scope_snapshot(db, column_id):
    return snapshot(db.scalars(select(Card).where(Card.column_id == column_id)).all())


def run_workers(session_factory, work, workers=6, rounds=15):
    errors = []

    def worker(seed_value):
        rng = random.Random(seed_value)
        with session_factory() as db:
            storage = Storage(db)
            for _ in range(rounds):
                try:
                    work(storage, db, rng)
                except ordering.OrderingError:
                    db.rollback()
                except Exception as exc:
                    errors.append(exc)
                    return

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []


def test_concurrent_repositions_keep_ranks_dense(session_factory):
    left_id, _ = seed(session_factory)

    def work(storage, db, rng):
        cards = storage.list_cards(left_id)
        card = rng.choice(cards)
        storage.modify_card(card, None, None, None, rng.randint(0, len(cards) - 1))

    run_workers(session_factory, work)

    with session_factory() as db:
        siblings = scope_snapshot(db, left_id)
        assert len(siblings) == 8
        assert ordering.is_dense(siblings)


def test_concurrent_transfers_keep_both_columns_dense(session_factory):
    left_id, right_id = seed(session_factory)

    def work(storage, db, rng):
        source, target = (left_id, right_id) if rng.random() < 0.5 else (right_id, left_id)
        cards = storage.list_cards(source)
        if not cards:
            return
        storage.move_card(rng.choice(cards), storage.get_column(target))

    run_workers(session_factory, work)

    with session_factory() as db:
        left = scope_snapshot(db, left_id)
        right = scope_snapshot(db, right_id)
        assert len(left) + len(right) == 16
        assert ordering.is_dense(left)
        assert ordering.is_dense(right)


def test_damaged_scope_is_compacted_before_the_next_write(session_factory):
    left_id, _ = seed(session_factory, cards_per_column=3)
    with session_factory() as db:
        for card in db.scalars(select(Card).where(Card.column_id == left_id)):
            card.order = card.order * 10
        db.commit()

    with session_factory() as db:
        storage = Storage(db)
        column = storage.get_column(left_id)
        storage.create_card(column, "late", "", None)
        cards = storage.list_cards(left_id)
        assert [(c.title, c.order) for c in cards] == [("L0", 0), ("L1", 1), ("L2", 2), ("late", 3)]


def test_rejected_reposition_leaves_ranks_untouched(session_factory):
    left_id, _ = seed(session_factory, cards_per_column=3)
    with session_factory() as db:
        storage = Storage(db)
        card = storage.list_cards(left_id)[0]
        with pytest.raises(ordering.RankOutOfRange):
            storage.modify_card(card, None, None, None, 7)

    with session_factory() as db:
        assert sorted(s.order for s in scope_snapshot(db, left_id)) == [0, 1, 2]
        assert db.scalar(select(User).limit(1)) is not None
        assert db.scalar(select(Board).limit(1)) is not None
        assert len(db.scalars(select(ColumnModel)).all()) == 2


def test_commit_failure_rolls_back_the_whole_shift_set(session_factory, monkeypatch):
    left_id, _ = seed(session_factory, cards_per_column=4)
    with session_factory() as db:
        storage = Storage(db)
        first = storage.list_cards(left_id)[0]
        first_id = first.id

        def broken_commit():
            db.flush()
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(db, "commit", broken_commit)
        with pytest.raises(StoreError):
            storage.modify_card(first, None, None, None, 3)

    with session_factory() as db:
        ranks = {s.id: s.order for s in scope_snapshot(db, left_id)}
        assert ranks[first_id] == 0
        assert sorted(ranks.values()) == [0, 1, 2, 3]


def test_stale_card_is_rejected_after_it_left_the_column(session_factory):
    left_id, right_id = seed(session_factory, cards_per_column=3)
    with session_factory() as first, session_factory() as second:
        stale_for_modify = Storage(first).list_cards(left_id)[1]
        stale_for_delete = Storage(second).list_cards(left_id)[1]
        moved_id = stale_for_modify.id

        with session_factory() as mover:
            storage = Storage(mover)
            storage.move_card(storage.get_card(moved_id), storage.get_column(right_id))

        with pytest.raises(ordering.SiblingNotFound):
            Storage(first).modify_card(stale_for_modify, None, None, None, 0)
        with pytest.raises(ordering.SiblingNotFound):
            Storage(second).delete_card(stale_for_delete)

    with session_factory() as db:
        left = scope_snapshot(db, left_id)
        right = scope_snapshot(db, right_id)
        assert moved_id not in {s.id for s in left}
        assert {s.id: s.order for s in right}[moved_id] == 3
        assert ordering.is_dense(left) and len(left) == 2
        assert ordering.is_dense(right) and len(right) == 4


def test_lock_registry_shrinks_after_boards_are_deleted(session_factory):
    gc.collect()
    baseline = len(scope_locks)
    with session_factory() as db:
        storage = Storage(db)
        user = storage.create_user("churn@example.com", "churn", "Password123!")
        for n in range(20):
            board = storage.create_board(user.id, f"Board {n}")
            column = storage.create_column(board, "Only")
            storage.create_card(column, "card", "", None)
            storage.delete_board(board)

    with scope_locks.hold(("board", "held")):
        assert len(scope_locks) == baseline + 1
    gc.collect()
    assert len(scope_locks) == baseline
