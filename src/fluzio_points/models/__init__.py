"""SQLAlchemy models package."""

from .commitment import (  # noqa: F401
    CommitmentKind,
    CommitmentStatus,
    TimedCommitment,
)
from .ledger import (  # noqa: F401
    AccountOwnerKind,
    LedgerTransaction,
    LedgerTransactionType,
    PointsAccount,
    ReversalStatus,
)
from .mission import (  # noqa: F401
    FundingPoolStatus,
    MissionFundingPool,
    Participation,
    ParticipationStatus,
)
