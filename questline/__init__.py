"""
Questline — Reward Ledger & Quest Completion Service
=====================================================
Records progress through gamified quests, turns completions and one-time
verification codes into XP, derives rank and achievements from the new
total, and keeps a read-optimised leaderboard in sync.  A quest or a code
is credited to an account at most once, however many times (or however
concurrently) the request arrives.

Package layout::

    questline/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Source kinds, default rank table
    ├── exceptions.py      # QuestlineError hierarchy (HTTP-mappable)
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + session helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default settings seeder
    ├── engine/
    │   ├── ranks.py       # Rank table, rank_for, leveled_up (pure)
    │   ├── achievements.py # Achievement predicate registry (pure)
    │   └── cache.py       # In-memory rank table / achievement cache
    ├── services/
    │   ├── ledger_store.py      # Atomic award / gate / redemption primitives
    │   ├── completion_service.py # The completion & redemption coordinator
    │   ├── leaderboard_service.py # Leaderboard projection
    │   ├── audit_service.py     # Best-effort xp_transactions writer
    │   ├── degraded_log.py      # Ring buffer of failed propagation steps
    │   └── reconciliation_service.py # Unpaid-gate sweep, rank drift
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # JWT identity, engine, cache
        └── routes/        # Quest, leaderboard and admin endpoints
"""

__version__ = "0.1.0"
