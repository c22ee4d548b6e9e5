from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class FeedEntry:
    title: str
    link: str
    published: str
    description: str = ""
    guid: str | None = None


@dataclass(frozen=True)
class CandidatePost:
    id: str
    text: str
    link: str
    published_at: datetime


@dataclass
class ProcessedPostRecord:
    id: str
    published_at: datetime
    processed_at: datetime | None = None


@dataclass
class PostOutcome:
    post_id: str
    telegram: bool = False
    discord: bool = False
    stored: bool = False
    skipped: bool = False
    error: str | None = None


@dataclass
class CycleResult:
    total_fetched: int = 0
    new_posts: int = 0
    backfilled: int = 0
    telegram_success: int = 0
    telegram_failed: int = 0
    discord_success: int = 0
    discord_failed: int = 0
    outcomes: list[PostOutcome] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    success: bool = True
    error: str | None = None

    def record_sink(self, sink_name: str, ok: bool) -> None:
        key = sink_name.lower()
        suffix = "success" if ok else "failed"
        attr = f"{key}_{suffix}"
        setattr(self, attr, getattr(self, attr) + 1)

    def abort(self, message: str) -> None:
        self.success = False
        self.error = message
        self.errors.append(message)


@dataclass
class FailureStreak:
    consecutive_failures: int = 0
    alert_sent: bool = False

    def record_failure(self, threshold: int) -> bool:
        """Count one failed cycle and report whether an alert is now due."""
        self.consecutive_failures += 1
        return self.consecutive_failures >= threshold and not self.alert_sent

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.alert_sent = False


@dataclass
class LegacySummary:
    total_fetched: int
    new_tweets: int
    telegram_success: int
    telegram_failed: int
    discord_success: int
    discord_failed: int
    errors: list[str]


def to_legacy_summary(result: CycleResult) -> LegacySummary:
    outcomes = result.outcomes
    errors = [f"{outcome.post_id}: {outcome.error}" for outcome in outcomes if outcome.error]
    if result.error:
        errors.insert(0, result.error)
    return LegacySummary(
        total_fetched=result.total_fetched,
        new_tweets=result.new_posts,
        telegram_success=sum(1 for outcome in outcomes if outcome.telegram),
        telegram_failed=sum(1 for outcome in outcomes if not outcome.telegram and not outcome.skipped),
        discord_success=sum(1 for outcome in outcomes if outcome.discord),
        discord_failed=sum(1 for outcome in outcomes if not outcome.discord and not outcome.skipped),
        errors=errors,
    )
