# src/sqlsalvage/engine/chain.py
"""RecoveryChain: ordered fallback across recovery strategies.

    recover -> dump -> table_by_table -> schema_only -> table_list

The chain halts at the first successful strategy. A failed strategy's output
is discarded before the next one runs. SpawnError and cancellation are not
caught: they end the chain where they happen.
"""

from __future__ import annotations

import contextlib
from collections.abc import Sequence
from dataclasses import dataclass

from sqlsalvage.contracts import RecoveryExhaustedError, RecoveryMode, StrategyName, StrategyResult
from sqlsalvage.core.capability import ToolCapabilities
from sqlsalvage.core.logging import get_logger
from sqlsalvage.engine.strategies import RecoveryStrategy, StrategyContext

logger = get_logger(__name__)

_MODE_STRATEGIES: dict[RecoveryMode, tuple[StrategyName, ...]] = {
    RecoveryMode.STANDARD: tuple(StrategyName),
    RecoveryMode.TABLE_BY_TABLE: (StrategyName.TABLE_BY_TABLE,),
}


@dataclass(frozen=True, slots=True)
class ChainResult:
    """The winning strategy plus every attempt made, in order."""

    result: StrategyResult
    attempts: tuple[StrategyResult, ...]


class RecoveryChain:
    """Runs strategies in order until one succeeds.

    Args:
        strategies: Strategy instances; order within a mode follows
            StrategyName declaration order, not list order.
        capabilities: Probe result; when it reports no ``.recover``, the
            primary strategy is skipped.
    """

    def __init__(
        self,
        strategies: Sequence[RecoveryStrategy],
        capabilities: ToolCapabilities | None = None,
    ) -> None:
        self._strategies = {s.name: s for s in strategies}
        self.capabilities = capabilities

    def plan(self, mode: RecoveryMode) -> list[RecoveryStrategy]:
        """Strategies this mode will try, in order."""
        planned: list[RecoveryStrategy] = []
        for name in _MODE_STRATEGIES[mode]:
            strategy = self._strategies.get(name)
            if strategy is None:
                continue
            if name == StrategyName.RECOVER and self.capabilities is not None and not self.capabilities.has_recover:
                logger.info("Skipping .recover, not supported by this sqlite3 build", version=self.capabilities.version)
                continue
            planned.append(strategy)
        return planned

    async def run(self, ctx: StrategyContext, mode: RecoveryMode = RecoveryMode.STANDARD) -> ChainResult:
        """Attempt each planned strategy until one succeeds.

        Raises:
            SpawnError: The tool could not be started.
            RecoveryExhaustedError: Every strategy failed.
        """
        attempts: list[StrategyResult] = []
        for strategy in self.plan(mode):
            logger.info("Attempting strategy", strategy=strategy.name.value)
            result = await strategy.attempt(ctx)
            attempts.append(result)
            if result.success:
                logger.info(
                    "Strategy succeeded",
                    strategy=strategy.name.value,
                    tables_recovered=result.tables_recovered,
                    tables_failed=result.tables_failed,
                )
                return ChainResult(result=result, attempts=tuple(attempts))

            logger.warning("Strategy failed", strategy=strategy.name.value, error=result.error_detail)
            self._discard_output(ctx)

        raise RecoveryExhaustedError(attempts)

    @staticmethod
    def _discard_output(ctx: StrategyContext) -> None:
        with contextlib.suppress(OSError):
            ctx.sql_path.unlink(missing_ok=True)
