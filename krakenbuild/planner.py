"""
Derived build parameters.

All size arithmetic is exact: budgets arrive as decimals (e.g. ``3.5`` GiB)
and are converted to ``Fraction`` so the reduction decision and the target
record count never depend on floating-point rounding.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from fractions import Fraction
from typing import Optional, Union

from .exceptions import IndexTooLargeError
from .header import HashTableHeader

logger = logging.getLogger(__name__)

GIB = 2**30
# Hash table slack over the raw library character count.
HASH_SIZE_SLACK = Fraction(115, 100)
MINIMIZER_ALPHABET = 4

SizeGiB = Union[int, Decimal, Fraction, str]


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def estimate_hash_size(total_library_bytes: int, slack: Fraction = HASH_SIZE_SLACK) -> int:
    """Hash table size for a library, ``ceil(slack * total_library_bytes)``."""
    scaled = slack * total_library_bytes
    return _ceil_div(scaled.numerator, scaled.denominator)


def index_size_bytes(minimizer_len: int) -> int:
    """Size of the minimizer index, ``8 * (4 ** minimizer_len + 2)``."""
    return 8 * (MINIMIZER_ALPHABET**minimizer_len + 2)


def _budget_bytes(max_size_gib: SizeGiB) -> Fraction:
    return Fraction(max_size_gib) * GIB


def reduction_needed(kdb_size: int, idx_size: int, max_size_gib: SizeGiB) -> bool:
    """True iff the table plus its index exceeds ``max_size_gib`` GiB."""
    return Fraction(kdb_size + idx_size, GIB) > Fraction(max_size_gib)


def target_record_count(max_size_gib: SizeGiB, idx_size: int, record_len: int) -> int:
    """
    Number of hash-table records that fit in the budget next to the index.

    Args:
        max_size_gib: Maximum database size in GiB.
        idx_size: Minimizer index size in bytes.
        record_len: Bytes per hash-table record.

    Returns:
        ``floor((max_size_gib * 2**30 - idx_size) / record_len)``

    Raises:
        IndexTooLargeError: If the index alone exceeds the budget.
    """
    available = _budget_bytes(max_size_gib) - idx_size
    if available < 0:
        raise IndexTooLargeError(
            f"Maximum database size too small - index alone needs "
            f"{idx_size / GIB:.2f} GB.  Aborting reduction.",
            details={"max_db_size_gib": str(max_size_gib), "index_bytes": idx_size},
        )
    return int(available // record_len)


@dataclass(frozen=True)
class ReductionPlan:
    """Outcome of the reduction decision for one raw hash table."""

    kdb_size: int
    idx_size: int
    max_size_gib: SizeGiB
    needed: bool
    target_count: Optional[int] = None
    key_count: Optional[int] = None


def plan_reduction(
    kdb_size: int,
    minimizer_len: int,
    max_size_gib: SizeGiB,
    header: Optional[HashTableHeader] = None,
) -> ReductionPlan:
    """
    Decides whether a table of ``kdb_size`` bytes must be reduced.

    When reduction is needed and a ``header`` is given, the target record
    count is computed too (raising ``IndexTooLargeError`` if impossible).
    """
    idx_size = index_size_bytes(minimizer_len)
    needed = reduction_needed(kdb_size, idx_size, max_size_gib)
    if not needed or header is None:
        return ReductionPlan(kdb_size, idx_size, max_size_gib, needed)
    count = target_record_count(max_size_gib, idx_size, header.record_len)
    return ReductionPlan(
        kdb_size,
        idx_size,
        max_size_gib,
        needed,
        target_count=count,
        key_count=header.key_count,
    )
