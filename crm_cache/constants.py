"""Centralized constants for cache keys, tags and backup namespaces.

Single source of truth for reserved keys so the cache engine, the backup
service and the routers agree on naming.
"""

from typing import Dict, Tuple

# =============================================================================
# CACHE TAGS AND METRICS
# =============================================================================

TAG_BACKUP = "backup"
TAG_REGISTRY = "registry"
TAG_CALCULATIONS = "calculations"

METRIC_CACHE_GET = "cache_get"

CALCULATION_KEY_PREFIX = "calculation:"

# =============================================================================
# BACKUP NAMESPACE (inside the durable cache tier)
# =============================================================================

BACKUP_KEY_PREFIX = "backup_"
BACKUP_REGISTRY_KEY = "backup_registry"
# 1.1 captures cache entries with their tags, priority and compression flag;
# 1.0 payloads hold bare values
BACKUP_FORMAT_VERSION = "1.1"
BARE_ENTRIES_FORMAT_VERSION = "1.0"

FULL_PREFIX = "full_"
INCREMENTAL_PREFIX = "incremental_"
AUTO_PREFIX = "auto_"
PRE_RESTORE_PREFIX = "pre_restore_"

# Emergency snapshot key in the local (origin) store
EMERGENCY_BACKUP_KEY = "emergencyBackup"

# =============================================================================
# RAW STORES
# =============================================================================

# Store names double as the changed-key prefix: "local_storage:leads_42"
LOCAL_STORAGE = "local_storage"
SESSION_STORAGE = "session_storage"
CHANGE_KEY_SEPARATOR = ":"

# Keys whose changes trigger an incremental backup
CRITICAL_PREFIXES: Tuple[str, ...] = ("leads_", "jobCounts_", "calculations_", "userSettings_")

# Fixed user-setting keys captured by full backups (section field -> store key)
USER_SETTING_KEYS: Dict[str, str] = {
    "theme": "theme",
    "language": "language",
    "preferences": "userPreferences",
    "settings": "appSettings",
}

# =============================================================================
# FULL BACKUP SECTIONS
# =============================================================================

SECTION_LOCAL_STORAGE = LOCAL_STORAGE
SECTION_SESSION_STORAGE = SESSION_STORAGE
SECTION_CACHE_ENTRIES = "cache_entries"
SECTION_CACHE_STATS = "cache_stats"
SECTION_SETTINGS = "settings"
SECTION_CALCULATIONS = "calculations"
