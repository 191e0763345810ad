import threading
from datetime import datetime, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from issuance import models
from issuance.config import settings
from issuance.core.exceptions import ConflictError
from issuance.services import document_numbering
from issuance.services.document_numbering import (
    fallback_number,
    format_yearly_number,
    insert_with_yearly_number,
    next_yearly_number,
    parse_yearly_seq,
)

from conftest import TEST_ENGINE

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _no_sleep(_seconds: float) -> None:
    return None


def _contract(client_id: int, number: str) -> models.Contract:
    return models.Contract(
        contract_number=number,
        client_id=client_id,
        kind=models.ContractKind.one_off,
        status="active",
        total_value=0.0,
        installment_count=1,
    )


def test_format_and_parse_yearly_number():
    assert format_yearly_number(prefix="TOP", year=2026, seq=7) == "TOP-2026-0007"
    assert format_yearly_number(prefix="TOP", year=2026, seq=12345) == "TOP-2026-12345"
    assert parse_yearly_seq("TOP-2026-0042", prefix="TOP", year=2026) == 42
    assert parse_yearly_seq("TOP-2025-0042", prefix="TOP", year=2026) is None
    assert parse_yearly_seq("PROP-2026-0042", prefix="TOP", year=2026) is None


def test_first_number_of_the_year_starts_at_one(db_session):
    number = next_yearly_number(
        db_session, column=models.Contract.contract_number, prefix="TOP", now=NOW, sleep=_no_sleep
    )
    assert number.formatted == "TOP-2026-0001"
    assert number.sequential


def test_next_number_follows_the_highest_existing(db_session, make_client):
    c = make_client()
    db_session.add_all(
        [
            _contract(c.id, "TOP-2026-0003"),
            _contract(c.id, "TOP-2026-0010"),
            _contract(c.id, "TOP-2025-0099"),
        ]
    )
    db_session.commit()

    number = next_yearly_number(
        db_session, column=models.Contract.contract_number, prefix="TOP", now=NOW, sleep=_no_sleep
    )
    assert number.formatted == "TOP-2026-0011"


def test_sequences_are_independent_per_prefix(db_session, make_client):
    c = make_client()
    db_session.add(_contract(c.id, "TOP-2026-0005"))
    db_session.commit()

    number = next_yearly_number(
        db_session,
        column=models.Proposal.proposal_number,
        prefix="PROP",
        now=NOW,
        sleep=_no_sleep,
    )
    assert number.formatted == "PROP-2026-0001"


def test_falls_back_to_timestamp_number_when_candidates_keep_colliding(db_session, monkeypatch):
    monkeypatch.setattr(document_numbering, "number_taken", lambda *_a, **_k: True)
    sleeps: list[float] = []

    number = next_yearly_number(
        db_session,
        column=models.Contract.contract_number,
        prefix="TOP",
        now=NOW,
        max_attempts=10,
        sleep=sleeps.append,
    )

    assert not number.sequential
    assert number.formatted.startswith("TOP-2026-")
    assert len(number.formatted.split("-")[-1]) == 4
    # jittered backoff between attempts, in the tens of milliseconds
    assert len(sleeps) == 9
    assert all(0.01 <= s <= 0.05 for s in sleeps)


def test_fallback_number_uses_low_order_timestamp_digits():
    assert fallback_number(prefix="TOP", year=2026, now_ms=1_700_000_123_456) == "TOP-2026-3456"


def test_insert_retries_after_a_uniqueness_race(db_session, make_client, monkeypatch):
    c = make_client()
    db_session.add(_contract(c.id, "TOP-2026-0001"))
    db_session.commit()
    client_id = c.id

    # Pretend the allocator missed the existing row once (the residual race).
    real_next = document_numbering.next_yearly_number
    calls = {"n": 0}

    def racy_next(db, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return document_numbering.YearlyNumber("TOP", 2026, 1, "TOP-2026-0001")
        return real_next(db, **kwargs)

    monkeypatch.setattr(document_numbering, "next_yearly_number", racy_next)

    row = insert_with_yearly_number(
        db_session,
        column=models.Contract.contract_number,
        prefix="TOP",
        build=lambda number: _contract(client_id, number),
        now=NOW,
        sleep=_no_sleep,
    )
    db_session.commit()

    assert row.contract_number == "TOP-2026-0002"
    assert calls["n"] == 2


def test_insert_gives_up_with_conflict_after_budget(db_session, make_client, monkeypatch):
    c = make_client()
    db_session.add(_contract(c.id, "TOP-2026-0001"))
    db_session.commit()
    client_id = c.id

    monkeypatch.setattr(
        document_numbering,
        "next_yearly_number",
        lambda db, **kw: document_numbering.YearlyNumber("TOP", 2026, 1, "TOP-2026-0001"),
    )

    with pytest.raises(ConflictError):
        insert_with_yearly_number(
            db_session,
            column=models.Contract.contract_number,
            prefix="TOP",
            build=lambda number: _contract(client_id, number),
            now=NOW,
            max_insert_attempts=5,
            sleep=_no_sleep,
        )

    assert db_session.query(models.Contract).count() == 1


def test_concurrent_allocations_never_share_a_number(make_client):
    c = make_client()
    client_id = c.id
    Session = sessionmaker(bind=TEST_ENGINE, autocommit=False, autoflush=False, future=True)

    results: list[str] = []
    errors: list[BaseException] = []
    lock = threading.Lock()
    barrier = threading.Barrier(5)

    def worker():
        db = Session()
        try:
            barrier.wait()
            row = insert_with_yearly_number(
                db,
                column=models.Contract.contract_number,
                prefix="TOP",
                build=lambda number: _contract(client_id, number),
                now=NOW,
                max_insert_attempts=settings.number_insert_attempts,
            )
            db.commit()
            with lock:
                results.append(row.contract_number)
        except BaseException as exc:  # surfaced by the assertion below
            with lock:
                errors.append(exc)
        finally:
            db.close()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert not errors
    assert len(results) == 5
    assert len(set(results)) == 5

    db = Session()
    try:
        stored = [row[0] for row in db.query(models.Contract.contract_number).all()]
    finally:
        db.close()
    assert sorted(stored) == sorted(results)
