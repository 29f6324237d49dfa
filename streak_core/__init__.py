from .errors import (
    CompetitionServiceError,
    DecodeFailure,
    EngineError,
    TransientBackendError,
)
from .config import EngineSettings, get_settings
from .types import (
    CommandPayload,
    CompetitionOptions,
    CompetitionState,
    CompetitionUser,
)
from .intervals import interval_key, interval_start, iter_interval_keys, next_interval_start
from .elimination import EliminationStatus, derive_elimination, resolve_elimination
from .scoring import (
    IntervalOutcome,
    ScoreResult,
    ScoringContext,
    ScoringStrategy,
    end_condition_met,
    score_competition,
    strategy_for,
)
from .ranking import (
    Placement,
    StandingRow,
    Standings,
    TieBreakResolver,
    TieContext,
    compute_placements,
    compute_standings,
    rank,
)
from .trophies import Trophy, TrophyCase, mint_trophies
from .validation import (
    CreateCompetitionRequest,
    InputSanitizer,
    ValidatedCmd,
    decode_competition,
)
from .lifecycle import (
    CommandOutcome,
    apply_command,
    compute_end_date,
    create_competition,
    default_state,
    derive_status,
    tick,
    validate_version,
)
from .throttle import (
    NotificationDispatcher,
    SocialActionThrottle,
    SocialEvent,
    check_flex,
    check_nudge,
)
from .reconcile import DisplayedCompetition, RefreshTrigger, reconcile
from .workouts import StaticWorkoutProvider, WorkoutDataProvider, build_intervals, collect_intervals
from .display import convert_distance, format_distance, format_duration, format_goal, lives_label
from .service import CompetitionBackend, CompetitionClient
from .memory_backend import InMemoryCompetitionBackend, RecordingDispatcher

__all__ = [
    "CompetitionServiceError",
    "DecodeFailure",
    "EngineError",
    "TransientBackendError",
    "EngineSettings",
    "get_settings",
    "CommandPayload",
    "CompetitionOptions",
    "CompetitionState",
    "CompetitionUser",
    "interval_key",
    "interval_start",
    "iter_interval_keys",
    "next_interval_start",
    "EliminationStatus",
    "derive_elimination",
    "resolve_elimination",
    "IntervalOutcome",
    "ScoreResult",
    "ScoringContext",
    "ScoringStrategy",
    "end_condition_met",
    "score_competition",
    "strategy_for",
    "Placement",
    "StandingRow",
    "Standings",
    "TieBreakResolver",
    "TieContext",
    "compute_placements",
    "compute_standings",
    "rank",
    "Trophy",
    "TrophyCase",
    "mint_trophies",
    "CreateCompetitionRequest",
    "InputSanitizer",
    "ValidatedCmd",
    "decode_competition",
    "CommandOutcome",
    "apply_command",
    "compute_end_date",
    "create_competition",
    "default_state",
    "derive_status",
    "tick",
    "validate_version",
    "NotificationDispatcher",
    "SocialActionThrottle",
    "SocialEvent",
    "check_flex",
    "check_nudge",
    "DisplayedCompetition",
    "RefreshTrigger",
    "reconcile",
    "StaticWorkoutProvider",
    "WorkoutDataProvider",
    "build_intervals",
    "collect_intervals",
    "convert_distance",
    "format_distance",
    "format_duration",
    "format_goal",
    "lives_label",
    "CompetitionBackend",
    "CompetitionClient",
    "InMemoryCompetitionBackend",
    "RecordingDispatcher",
]
