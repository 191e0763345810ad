from __future__ import annotations

import logging
import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import InstrumentedAttribute, Session

from issuance.core.exceptions import ConflictError

logger = logging.getLogger("issuance.numbering")

T = TypeVar("T")


@dataclass(frozen=True)
class YearlyNumber:
    prefix: str
    year: int
    seq: int | None  # None when the timestamp fallback was used
    formatted: str

    @property
    def sequential(self) -> bool:
        return self.seq is not None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_yearly_number(*, prefix: str, year: int, seq: int) -> str:
    """Format: PREFIX-YYYY-NNNN (4-digit zero padding, wider once past 9999)."""

    return f"{prefix}-{int(year):04d}-{int(seq):04d}"


def parse_yearly_seq(value: str | None, *, prefix: str, year: int) -> int | None:
    if not value:
        return None
    m = re.fullmatch(rf"{re.escape(prefix)}-{int(year):04d}-(\d+)", str(value))
    if not m:
        return None
    return int(m.group(1))


def _max_existing_seq(db: Session, column: InstrumentedAttribute, *, prefix: str, year: int) -> int:
    like = f"{prefix}-{int(year):04d}-%"
    # Longest first so that 10000 sorts above 9999.
    row = (
        db.query(column)
        .filter(column.like(like))
        .order_by(func.length(column).desc(), column.desc())
        .first()
    )
    if row is None:
        return 0
    return parse_yearly_seq(row[0], prefix=prefix, year=year) or 0


def number_taken(db: Session, column: InstrumentedAttribute, value: str) -> bool:
    return db.query(column).filter(column == value).first() is not None


def fallback_number(*, prefix: str, year: int, now_ms: int | None = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{prefix}-{int(year):04d}-{int(now_ms) % 10000:04d}"


def next_yearly_number(
    db: Session,
    *,
    column: InstrumentedAttribute,
    prefix: str,
    now: datetime | None = None,
    max_attempts: int = 10,
    backoff_ms: tuple[int, int] = (10, 50),
    sleep: Callable[[float], None] = time.sleep,
) -> YearlyNumber:
    """Allocate the next PREFIX-YYYY-NNNN value for ``column``.

    The store only offers a uniqueness constraint, so this reads the current
    maximum, proposes max+1 and re-checks that exact candidate before handing it
    out. A taken candidate means somebody inserted in between; back off with
    jitter and read again. After ``max_attempts`` the caller still gets a value,
    derived from the clock instead of the sequence.

    Nothing is written here. The caller inserts the row and must treat a
    uniqueness violation on that insert as a reason to call again.
    """

    now = now or _utc_now()
    year = int(now.year)
    low, high = backoff_ms

    for attempt in range(1, max_attempts + 1):
        seq = _max_existing_seq(db, column, prefix=prefix, year=year) + 1
        candidate = format_yearly_number(prefix=prefix, year=year, seq=seq)
        if not number_taken(db, column, candidate):
            return YearlyNumber(prefix=prefix, year=year, seq=seq, formatted=candidate)

        logger.info(
            "number_candidate_taken",
            extra={"prefix": prefix, "candidate": candidate, "attempt": attempt},
        )
        if attempt < max_attempts:
            sleep(random.uniform(low, high) / 1000.0)

    formatted = fallback_number(prefix=prefix, year=year)
    logger.warning(
        "number_sequence_fallback",
        extra={"prefix": prefix, "year": year, "attempts": max_attempts, "formatted": formatted},
    )
    return YearlyNumber(prefix=prefix, year=year, seq=None, formatted=formatted)


def backoff_before_retry(
    backoff_ms: tuple[int, int], sleep: Callable[[float], None] = time.sleep
) -> None:
    low, high = backoff_ms
    sleep(random.uniform(low, high) / 1000.0)


def insert_with_yearly_number(
    db: Session,
    *,
    column: InstrumentedAttribute,
    prefix: str,
    build: Callable[[str], T],
    now: datetime | None = None,
    max_insert_attempts: int = 5,
    max_attempts: int = 10,
    backoff_ms: tuple[int, int] = (10, 50),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Allocate a number, build the row with it and flush, retrying on a uniqueness race.

    A conflicting insert rolls the session back, so the row built here has to be
    the first write of the current transaction.
    """

    entity = prefix
    for attempt in range(1, max_insert_attempts + 1):
        number = next_yearly_number(
            db,
            column=column,
            prefix=prefix,
            now=now,
            max_attempts=max_attempts,
            backoff_ms=backoff_ms,
            sleep=sleep,
        )
        row = build(number.formatted)
        entity = type(row).__name__
        db.add(row)
        try:
            db.flush()
            return row
        except IntegrityError:
            db.rollback()
            if not number_taken(db, column, number.formatted):
                raise
            logger.warning(
                "number_insert_conflict",
                extra={"prefix": prefix, "formatted": number.formatted, "attempt": attempt},
            )
            if attempt < max_insert_attempts:
                backoff_before_retry(backoff_ms, sleep)

    raise ConflictError(
        f"Could not generate a unique {entity} number after {max_insert_attempts} attempts"
    )
