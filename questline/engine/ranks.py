"""
questline.engine.ranks — Rank Policy
=====================================

Pure XP → rank mapping over a versioned, ordered threshold table.  No I/O.

The same :class:`RankTable` renders itself as a SQL ``CASE`` expression
(:meth:`RankTable.rank_case`) so the rank written by the atomic award
statement and the rank computed in Python always come from one definition.

Ranks are compared by **ordinal**, never by name: renaming a tier cannot
make ``leveled_up`` misfire.
"""

from __future__ import annotations

import logging
from bisect import bisect_right
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from sqlalchemy import ColumnElement, case, literal

from questline.constants import DEFAULT_RANK_VERSION, DEFAULT_RANKS

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Rank:
    """One tier of the rank table.  ``ordinal`` 0 is the lowest tier."""

    ordinal: int
    name: str
    min_xp: int

    @property
    def level(self) -> int:
        """1-based position, shown to users as their level."""
        return self.ordinal + 1


class RankTable:
    """Ordered, validated rank thresholds.

    Parameters
    ----------
    tiers:
        ``(name, min_xp)`` pairs in ascending order.
    version:
        Bumped by operators whenever the table changes; reported by the
        reconciliation sweep so rank drift can be attributed.

    Raises
    ------
    ValueError
        If the table is empty, does not start at 0 XP, is not strictly
        increasing, or repeats a name.
    """

    __slots__ = ("version", "_ranks", "_thresholds", "_by_name")

    def __init__(
        self,
        tiers: Iterable[tuple[str, int]] = DEFAULT_RANKS,
        version: int = DEFAULT_RANK_VERSION,
    ) -> None:
        pairs = [(str(name), int(min_xp)) for name, min_xp in tiers]
        if not pairs:
            raise ValueError("rank table must contain at least one tier")
        if pairs[0][1] != 0:
            raise ValueError(
                f"first rank must start at 0 XP, got {pairs[0][1]} for {pairs[0][0]!r}"
            )
        for (prev_name, prev_xp), (name, min_xp) in zip(pairs, pairs[1:]):
            if min_xp <= prev_xp:
                raise ValueError(
                    f"rank thresholds must be strictly increasing: "
                    f"{prev_name!r}={prev_xp} then {name!r}={min_xp}"
                )
        names = [name for name, _ in pairs]
        if len(set(names)) != len(names):
            raise ValueError(f"rank names must be unique: {names}")

        self.version = int(version)
        self._ranks: tuple[Rank, ...] = tuple(
            Rank(ordinal=i, name=name, min_xp=min_xp)
            for i, (name, min_xp) in enumerate(pairs)
        )
        self._thresholds = [r.min_xp for r in self._ranks]
        self._by_name = {r.name: r for r in self._ranks}

    # ------------------------------------------------------------------
    # Construction from the settings table
    # ------------------------------------------------------------------
    @classmethod
    def from_setting(cls, rows: Sequence[dict], version: int) -> RankTable:
        """Build from the ``ranks.thresholds`` JSON (``[{name, min_xp}]``)."""
        return cls(((row["name"], row["min_xp"]) for row in rows), version=version)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def ranks(self) -> tuple[Rank, ...]:
        return self._ranks

    @property
    def lowest(self) -> Rank:
        return self._ranks[0]

    def rank_for(self, xp: int) -> Rank:
        """Return the highest tier whose threshold is ``<= xp``."""
        if xp < 0:
            raise ValueError(f"xp must not be negative, got {xp}")
        return self._ranks[bisect_right(self._thresholds, xp) - 1]

    def by_name(self, name: str) -> Rank | None:
        return self._by_name.get(name)

    def ordinal(self, name: str) -> int:
        """Ordinal of *name*; unknown names (e.g. a retired tier) sort lowest."""
        rank = self._by_name.get(name)
        return rank.ordinal if rank is not None else -1

    def leveled_up(self, old: Rank | str, new: Rank | str) -> bool:
        """True if *new* is a strictly higher tier than *old*."""
        old_ord = old.ordinal if isinstance(old, Rank) else self.ordinal(old)
        new_ord = new.ordinal if isinstance(new, Rank) else self.ordinal(new)
        return new_ord > old_ord

    def next_rank(self, rank: Rank) -> Rank | None:
        if rank.ordinal + 1 < len(self._ranks):
            return self._ranks[rank.ordinal + 1]
        return None

    # ------------------------------------------------------------------
    # SQL rendering
    # ------------------------------------------------------------------
    def rank_case(self, xp_expr: ColumnElement[int]) -> ColumnElement[str]:
        """SQL expression evaluating to the rank name for *xp_expr*.

        Checked from the highest tier down, so the first matching
        ``WHEN`` is the answer.
        """
        whens = [
            (xp_expr >= rank.min_xp, rank.name)
            for rank in reversed(self._ranks[1:])
        ]
        if not whens:
            return literal(self.lowest.name)
        return case(*whens, else_=self.lowest.name)

    def as_setting(self) -> list[dict]:
        return [{"name": r.name, "min_xp": r.min_xp} for r in self._ranks]

    def __len__(self) -> int:
        return len(self._ranks)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RankTable):
            return NotImplemented
        return self.version == other.version and self._ranks == other._ranks

    def __hash__(self) -> int:
        return hash((self.version, self._ranks))

    def __repr__(self) -> str:
        tiers = ", ".join(f"{r.name}>={r.min_xp}" for r in self._ranks)
        return f"<RankTable v{self.version} [{tiers}]>"


DEFAULT_RANK_TABLE = RankTable()
