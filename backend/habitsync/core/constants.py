"""
Application constants
"""

# Local store keys
HABITS_CACHE_KEY_PREFIX = "habits_"
COMPLETIONS_CACHE_KEY_PREFIX = "completions_"
PENDING_MUTATIONS_KEY = "pending_mutations"
ID_MAP_KEY = "temp_id_map"

# Identifiers synthesized while offline
TEMP_ID_PREFIX = "temp_"

# Frequency bitmask bounds
FREQUENCY_MIN = 0
FREQUENCY_MAX = 127

# Habit title bounds
TITLE_MIN_LENGTH = 1
TITLE_MAX_LENGTH = 100

# Remote tables
HABITS_TABLE = "habits"
COMPLETIONS_TABLE = "habit_completions"

EXPORT_CSV_HEADERS = [
    "Title",
    "Description",
    "Frequency Days",
    "Schedule",
    "Start Date",
    "Current Streak",
    "Longest Streak",
    "Completion Rate",
    "Total Completions",
    "Last Completed",
]
