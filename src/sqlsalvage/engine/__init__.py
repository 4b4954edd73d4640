# src/sqlsalvage/engine/__init__.py
"""Recovery engine: the strategy chain and the session pipeline around it.

Example:
    from sqlsalvage.config import load_config
    from sqlsalvage.engine import RecoveryService

    service = RecoveryService.from_config(load_config(preset="default"))
    outcome = await service.run(session, submission)
"""

from sqlsalvage.engine.chain import ChainResult, RecoveryChain
from sqlsalvage.engine.service import RecoveryService, Submission
from sqlsalvage.engine.strategies import (
    DumpStrategy,
    RecoverStrategy,
    RecoveryStrategy,
    SchemaOnlyStrategy,
    StrategyContext,
    TableByTableStrategy,
    TableListStrategy,
    default_strategies,
)

__all__ = [
    "ChainResult",
    "DumpStrategy",
    "RecoverStrategy",
    "RecoveryChain",
    "RecoveryService",
    "RecoveryStrategy",
    "SchemaOnlyStrategy",
    "StrategyContext",
    "Submission",
    "TableByTableStrategy",
    "TableListStrategy",
    "default_strategies",
]
