"""Retry sweep for opt-ins still waiting for a ride.

Each eligible opt-in gets one more single-opt-in match attempt per sweep.
Attempts are spaced by a cooldown and capped; an opt-in that fails its last
allowed attempt is cancelled.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from config import Settings, get_settings
from errors import CommitConflict, StorageWriteError, TransientError
from matching import MatchingEngine, require_service_context
from schemas import MatchOptions, RetryResult, ServiceContext
import store

logger = logging.getLogger(__name__)


class RetryCoordinator:
    def __init__(self, engine: MatchingEngine, settings: Optional[Settings] = None, clock=datetime.utcnow):
        self.engine = engine
        self.settings = settings or get_settings()
        self.clock = clock

    def retry_for_date(self, commute_date, ctx: ServiceContext, max_retries: Optional[int] = None,
                       options: Optional[MatchOptions] = None) -> RetryResult:
        require_service_context(ctx)
        commute_date = store.parse_commute_date(commute_date)
        max_retries = self.settings.max_retries if max_retries is None else max_retries
        options = options or MatchOptions()
        result = RetryResult(date=commute_date, dry_run=options.dry_run, max_retries=max_retries)
        cooldown = timedelta(minutes=self.settings.retry_cooldown_minutes)

        eligible = store.retry_candidates(commute_date, max_retries)
        names = {uid: u.full_name for uid, u in store.users_by_id(o.user_id for o in eligible).items()}
        logger.info("retry sweep %s: %d candidates (max_retries=%d, dry_run=%s)",
                    commute_date, len(eligible), max_retries, options.dry_run)

        for opt_in in eligible:
            name = names.get(opt_in.user_id, "Unknown User")
            now = self.clock()
            if opt_in.last_retry_at is not None and now - opt_in.last_retry_at < cooldown:
                result.add_detail(opt_in.id, name, "skipped", "too soon since last retry")
                continue

            if options.dry_run:
                outcome = self._attempt(opt_in.id, ctx, options, result)
                result.add_detail(opt_in.id, name, "matched" if outcome is None else "failed",
                                  "would match (dry run)" if outcome is None else outcome)
                continue

            try:
                attempts = store.mark_retry_attempt(opt_in.id, now)
            except CommitConflict:
                # placed by an earlier attempt in this sweep
                result.add_detail(opt_in.id, name, "skipped", "no longer pending")
                continue
            except StorageWriteError as exc:
                logger.warning("retry bookkeeping failed for opt-in %s: %s", opt_in.id, exc)
                result.errors.append(f"failed to update retry count for {name}")
                result.add_detail(opt_in.id, name, "failed", "failed to update retry count")
                continue

            failure = self._attempt(opt_in.id, ctx, options, result)
            if failure is None:
                result.add_detail(opt_in.id, name, "matched", "matched on retry")
                continue

            if attempts >= max_retries and store.cancel_exhausted(opt_in.id):
                result.cancelled += 1
                failure = f"{failure}; retries exhausted, opt-in cancelled"
                logger.info("opt-in %s cancelled after %d attempts", opt_in.id, attempts)
            result.add_detail(opt_in.id, name, "failed", failure)

        return result.finalize()

    def _attempt(self, opt_in_id, ctx, options, result) -> Optional[str]:
        """One single-opt-in match. None on success, otherwise the failure reason."""
        try:
            outcome = self.engine.match_for_single_opt_in(
                opt_in_id, ctx, MatchOptions(dry_run=options.dry_run, force_match=options.force_match)
            )
        except TransientError as exc:
            result.errors.append(f"opt-in {opt_in_id}: {exc}")
            return f"matching failed: {exc}"
        result.errors.extend(outcome.errors)
        if any(d.opt_in_id == opt_in_id and d.status == "matched" for d in outcome.details):
            return None
        own = next((d for d in outcome.details if d.opt_in_id == opt_in_id), None)
        return (own.reason if own and own.reason else None) or "no compatible grouping"
