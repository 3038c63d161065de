"""
Post ranking - time-decayed engagement score

score = (engagement - flag_penalty) / time_decay

- engagement = likes + comments * comment_weight
- flag_penalty = flags * flag_penalty
- time_decay = (hours_old + grace_period_hours) ** decay_exponent

Works on any object exposing ``likes_count``, ``comments_count``,
``created_at`` and optionally ``flag_count`` (Post, PostSnapshot, ...).
"""
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple, TypeVar, Union
import math

SECONDS_PER_HOUR = 3600.0

PostT = TypeVar("PostT")


@dataclass(frozen=True)
class ScoringConfig:
    """Tuning knobs for the ranking formula"""
    comment_weight: float = 2.0
    flag_penalty: float = 5.0
    decay_exponent: float = 1.5  # 1.0 linear, 2.0 aggressive
    grace_period_hours: float = 2.0

    @classmethod
    def from_settings(cls, settings) -> "ScoringConfig":
        return cls(
            comment_weight=settings.RANKING_COMMENT_WEIGHT,
            flag_penalty=settings.RANKING_FLAG_PENALTY,
            decay_exponent=settings.RANKING_DECAY_EXPONENT,
            grace_period_hours=settings.RANKING_GRACE_PERIOD_HOURS,
        )


DEFAULT_SCORING = ScoringConfig()


@dataclass(frozen=True)
class ScoreBreakdown:
    """Intermediate values of a score computation"""
    score: float
    engagement: float
    flag_penalty: float
    base_score: float
    age_hours: float
    time_decay: float


def _as_utc(value: Union[datetime, str]) -> datetime:
    """Normalize a timestamp to an aware UTC datetime"""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _age_hours(created_at: Union[datetime, str], now: datetime) -> float:
    return (_as_utc(now) - _as_utc(created_at)).total_seconds() / SECONDS_PER_HOUR


def _time_decay(age_hours: float, config: ScoringConfig) -> float:
    base = age_hours + config.grace_period_hours
    exponent = config.decay_exponent
    if base < 0 and not float(exponent).is_integer():
        # Fractional power of a negative number has no real value
        return math.nan
    if base == 0 and exponent < 0:
        return math.inf
    return base ** exponent


def _divide(base_score: float, time_decay: float) -> float:
    if math.isnan(time_decay):
        return math.nan
    if time_decay == 0:
        if base_score == 0:
            return math.nan
        return math.copysign(math.inf, base_score)
    return base_score / time_decay


def _score_terms(post, now: Optional[datetime], config: ScoringConfig) -> ScoreBreakdown:
    """Unrounded score terms shared by scoring and breakdown"""
    now = now or datetime.now(timezone.utc)
    age_hours = _age_hours(post.created_at, now)

    engagement = post.likes_count + post.comments_count * config.comment_weight
    flag_penalty = (getattr(post, "flag_count", None) or 0) * config.flag_penalty
    base_score = engagement - flag_penalty
    time_decay = _time_decay(age_hours, config)

    return ScoreBreakdown(
        score=_divide(base_score, time_decay),
        engagement=engagement,
        flag_penalty=flag_penalty,
        base_score=base_score,
        age_hours=age_hours,
        time_decay=time_decay,
    )


def get_score_breakdown(
    post,
    now: Optional[datetime] = None,
    config: ScoringConfig = DEFAULT_SCORING,
) -> ScoreBreakdown:
    """Compute a post's score along with every intermediate term"""
    terms = _score_terms(post, now, config)
    return replace(
        terms,
        age_hours=round(terms.age_hours, 2),
        time_decay=round(terms.time_decay, 2),
    )


def calculate_post_score(
    post,
    now: Optional[datetime] = None,
    config: ScoringConfig = DEFAULT_SCORING,
) -> float:
    """Calculate a post's ranking score at ``now`` (defaults to the current time)"""
    return _score_terms(post, now, config).score


def _sort_key(score: float):
    # NaN scores sink to the bottom
    if math.isnan(score):
        return (1, 0.0)
    return (0, -score)


def sort_posts_by_score(
    posts: Sequence[PostT],
    now: Optional[datetime] = None,
    config: ScoringConfig = DEFAULT_SCORING,
) -> List[PostT]:
    """Return a new list of posts ordered by descending score"""
    return [post for post, _ in rank_posts(posts, now, config)]


def rank_posts(
    posts: Sequence[PostT],
    now: Optional[datetime] = None,
    config: ScoringConfig = DEFAULT_SCORING,
) -> List[Tuple[PostT, float]]:
    """Return (post, score) pairs ordered by descending score"""
    now = now or datetime.now(timezone.utc)
    scored = [(post, calculate_post_score(post, now, config)) for post in posts]
    scored.sort(key=lambda item: _sort_key(item[1]))
    return scored


def get_top_posts(
    posts: Sequence[PostT],
    limit: int,
    now: Optional[datetime] = None,
    config: ScoringConfig = DEFAULT_SCORING,
) -> List[PostT]:
    """Get the ``limit`` highest scoring posts"""
    return sort_posts_by_score(posts, now, config)[:limit]
