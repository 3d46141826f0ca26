"""Trackmania records tracker bot.

Modules:
- config: environment, logging and constants
- task_queue: bounded FIFO queues with a concurrency limit
- http: throttled upstream session and error types
- tokens: per-audience Nadeo token cache
- oauth: display names through the public OAuth API
- api: upstream endpoints (campaigns, records, leaderboards)
- storage: SQLite schema, tenants, settings and maps
- players: registrations and display names
- records: time-based personal best ledger
- ranks: position-based weekly shorts ledger
- formatting / i18n: message building and translations
- announcer: multi-chat delivery of new records
- watchers: polling cycles and the scheduler
- state: wiring of the long-lived components
- auth / commands / app: telegram access control, handlers and bootstrap

Public facade (re-export) for callers and tests.
"""

from .config import Config, BOT_TOKEN, ALLOWED_USER_ID, DB_PATH, config
from .task_queue import TaskQueue, QueueFullError
from .http import UpstreamError, UpstreamAuthError, UpstreamHttp, make_session, build_headers
from .tokens import TokenCache, AudienceToken
from .oauth import DisplayNameClient
from .api import TrackmaniaApi
from .storage import (
    Database,
    Tenant,
    get_tenant,
    update_tenant,
    list_tenants,
    lowest_min_position,
    store_map,
    CATEGORY_CAMPAIGN,
    CATEGORY_WEEKLY_SHORTS,
)
from .players import Player, register_player, unregister_player, list_players, canonical_players
from .records import TimeOutcome, TimeRecordResult, update_time_record, get_unannounced_time_records
from .ranks import RankUpdate, apply_rank_update, process_map_rank_records, get_unannounced_rank_records
from .formatting import format_time, format_position_change, build_time_notification, build_rank_notification
from .announcer import Announcer, DeliveryResult, resolve_channel
from .watchers import Scheduler, run_campaign_cycle, run_weekly_shorts_cycle, run_with_auth_retry
from .state import TrackerState
from .auth import is_group_member, is_group_admin, is_operator, guard_admin, guard_group, guard_operator
from .app import main, startup_health_check

__all__ = [
    # Config / queues / HTTP
    "Config", "BOT_TOKEN", "ALLOWED_USER_ID", "DB_PATH", "config",
    "TaskQueue", "QueueFullError",
    "UpstreamError", "UpstreamAuthError", "UpstreamHttp", "make_session", "build_headers",
    "TokenCache", "AudienceToken", "DisplayNameClient", "TrackmaniaApi",
    # Storage / ledgers
    "Database", "Tenant", "get_tenant", "update_tenant", "list_tenants", "lowest_min_position", "store_map",
    "CATEGORY_CAMPAIGN", "CATEGORY_WEEKLY_SHORTS",
    "Player", "register_player", "unregister_player", "list_players", "canonical_players",
    "TimeOutcome", "TimeRecordResult", "update_time_record", "get_unannounced_time_records",
    "RankUpdate", "apply_rank_update", "process_map_rank_records", "get_unannounced_rank_records",
    # Formatting / delivery / scheduling
    "format_time", "format_position_change", "build_time_notification", "build_rank_notification",
    "Announcer", "DeliveryResult", "resolve_channel",
    "Scheduler", "run_campaign_cycle", "run_weekly_shorts_cycle", "run_with_auth_retry",
    "TrackerState",
    # Auth / App
    "is_group_member", "is_group_admin", "is_operator", "guard_admin", "guard_group", "guard_operator",
    "main", "startup_health_check",
]
