"""Batch coordination analysis over many wallets.

Candidate pairs for every requested wallet are collected, de-duplicated as
unordered pairs and scored on a thread pool. The pair graph is then split into
connected components once, so a wallet reachable from two inputs lands in a
single group instead of two overlapping ones.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import datetime

from polymarket_coordination.detector.groups import GroupDetector
from polymarket_coordination.detector.models import (
    BatchCoordinationResult,
    CoordinationGroup,
    PairSimilarity,
    empty_pattern_counts,
    empty_risk_counts,
)
from polymarket_coordination.ingestor.models import InvalidWalletAddressError, normalize_address
from polymarket_coordination.storage.trade_store import TradeStoreSnapshot

logger = logging.getLogger(__name__)

PairScorer = Callable[[tuple[str, str]], PairSimilarity | None]


class BatchAnalyzer:
    """Runs pairwise scoring for a set of wallets with an optional time budget.

    Example:
        ```python
        analyzer = BatchAnalyzer(group_detector, max_workers=4, deadline_seconds=30)
        result = analyzer.analyze(store.snapshot(), wallets)
        if not result.is_complete:
            print(f"scored {result.pairs_computed}, skipped {result.pairs_skipped}")
        ```
    """

    def __init__(
        self,
        group_detector: GroupDetector,
        *,
        max_workers: int | None = None,
        deadline_seconds: float | None = None,
    ) -> None:
        self._groups = group_detector
        self._max_workers = max_workers
        self._deadline_seconds = deadline_seconds

    def analyze(
        self,
        snapshot: TradeStoreSnapshot,
        wallets: Iterable[str],
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        market_filter: Iterable[str] | None = None,
        bypass_cache: bool = False,
        deadline_seconds: float | None = None,
        max_workers: int | None = None,
        within_inputs: bool = False,
    ) -> BatchCoordinationResult:
        """Analyze ``wallets`` jointly.

        Each input is paired with every wallet it shares a market with, or only
        with the other inputs when ``within_inputs`` is set.

        Invalid addresses are reported in ``failed_wallets``. A pair that
        raises is logged and counted in ``failed_pairs``. When the deadline
        passes, unscored pairs are counted in ``pairs_skipped`` and the result
        is marked incomplete. Pairs still queued at that point are cancelled,
        and the call returns once the pairs already running have finished, so
        no worker outlives it.
        """
        started = time.perf_counter()
        settings = self._groups.settings
        budget = deadline_seconds if deadline_seconds is not None else self._deadline_seconds
        if budget is None:
            budget = settings.batch_deadline_seconds
        deadline = started + budget if budget is not None else None
        workers = max_workers or self._max_workers or settings.batch_max_workers
        markets = frozenset(market_filter) if market_filter else None

        inputs: list[str] = []
        failed_wallets: list[str] = []
        for raw in wallets:
            try:
                wallet = normalize_address(raw)
            except InvalidWalletAddressError as e:
                logger.warning("Skipping wallet in batch: %s", e)
                failed_wallets.append(str(raw))
                continue
            if wallet not in inputs:
                inputs.append(wallet)

        pair_keys: set[tuple[str, str]] = set()
        for wallet in inputs:
            candidates = self._groups.candidates_for(
                snapshot,
                wallet,
                start=start,
                end=end,
                market_filter=markets,
                wallet_filter=inputs if within_inputs else None,
            )
            for other in candidates:
                pair_keys.add((wallet, other) if wallet < other else (other, wallet))
        ordered_pairs = sorted(pair_keys)

        def score(pair: tuple[str, str]) -> PairSimilarity | None:
            return self._groups.engine.analyze_pair(
                snapshot,
                pair[0],
                pair[1],
                start=start,
                end=end,
                market_filter=markets,
                bypass_cache=bypass_cache,
            )

        if workers <= 1:
            results, computed, failed, complete = self._run_inline(ordered_pairs, score, deadline)
        else:
            results, computed, failed, complete = self._run_pool(ordered_pairs, score, deadline, workers)

        groups = self._groups.build_groups(results, snapshot, start=start, end=end)
        results_by_wallet: dict[str, CoordinationGroup | None] = {}
        for wallet in inputs:
            results_by_wallet[wallet] = next((g for g in groups if wallet in g.member_set), None)

        groups_by_risk = empty_risk_counts()
        groups_by_pattern = empty_pattern_counts()
        for group in groups:
            groups_by_risk[group.risk_level] += 1
            groups_by_pattern[group.pattern] += 1

        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        skipped = len(ordered_pairs) - computed - failed
        if not complete:
            logger.warning(
                "Batch deadline reached: scored %d of %d pairs",
                computed,
                len(ordered_pairs),
            )
        logger.info(
            "Batch analyzed %d wallets (%d pairs, %d groups) in %.1fms",
            len(inputs),
            computed,
            len(groups),
            elapsed_ms,
        )

        return BatchCoordinationResult(
            wallets_analyzed=len(inputs),
            groups=tuple(groups),
            coordinated_wallet_count=sum(1 for g in results_by_wallet.values() if g is not None),
            results_by_wallet=results_by_wallet,
            processing_time_ms=elapsed_ms,
            is_complete=complete,
            pairs_computed=computed,
            pairs_skipped=skipped,
            failed_pairs=failed,
            failed_wallets=tuple(failed_wallets),
            groups_by_risk=groups_by_risk,
            groups_by_pattern=groups_by_pattern,
        )

    @staticmethod
    def _run_inline(
        pairs: list[tuple[str, str]],
        score: PairScorer,
        deadline: float | None,
    ) -> tuple[list[PairSimilarity], int, int, bool]:
        results: list[PairSimilarity] = []
        computed = 0
        failed = 0
        for pair in pairs:
            if deadline is not None and time.perf_counter() >= deadline:
                return results, computed, failed, False
            try:
                result = score(pair)
            except Exception:
                logger.exception("Failed to score pair %s / %s", *pair)
                failed += 1
                continue
            computed += 1
            if result is not None:
                results.append(result)
        return results, computed, failed, True

    @staticmethod
    def _run_pool(
        pairs: list[tuple[str, str]],
        score: PairScorer,
        deadline: float | None,
        workers: int,
    ) -> tuple[list[PairSimilarity], int, int, bool]:
        results: list[PairSimilarity] = []
        computed = 0
        failed = 0
        complete = True
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="coordination-pair")
        try:
            futures: dict[Future[PairSimilarity | None], tuple[str, str]] = {}
            for pair in pairs:
                if deadline is not None and time.perf_counter() >= deadline:
                    complete = False
                    break
                futures[executor.submit(score, pair)] = pair

            timeout = None if deadline is None else max(0.0, deadline - time.perf_counter())
            try:
                for future in as_completed(futures, timeout=timeout):
                    pair = futures[future]
                    try:
                        result = future.result()
                    except Exception:
                        logger.exception("Failed to score pair %s / %s", *pair)
                        failed += 1
                        continue
                    computed += 1
                    if result is not None:
                        results.append(result)
            except TimeoutError:
                complete = False
        finally:
            # Queued pairs are dropped; running ones finish before returning.
            executor.shutdown(wait=True, cancel_futures=True)

        # Keep the downstream grouping independent of completion order.
        results.sort(key=lambda p: (p.wallet_a, p.wallet_b))
        return results, computed, failed, complete
