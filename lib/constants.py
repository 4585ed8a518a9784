"""
Constants for the Azure Hybrid Benefit remediation tool.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# License Values
# =============================================================================

# Windows Server Azure Hybrid Benefit (VM.license_type)
OS_LICENSE_AHUB = "Windows_Server"

# SQL Server IaaS license types (SqlVirtualMachine.sql_server_license_type)
SQL_LICENSE_AHUB = "AHUB"
SQL_LICENSE_PAYG = "PAYG"
SQL_LICENSE_DR = "DR"  # Free passive DR replica - never overwritten

OS_TYPE_WINDOWS = "windows"

# =============================================================================
# Processing Modes
# =============================================================================

MODE_OS = "OS"
MODE_SQL = "SQL"
MODE_BOTH = "Both"
VALID_MODES = (MODE_OS, MODE_SQL, MODE_BOTH)

# =============================================================================
# Result Values
# =============================================================================

APPLIED_NONE = "None"
APPLIED_OS = "OS"
APPLIED_SQL = "SQL"
APPLIED_ERROR = "Error"

STATUS_SUCCESS = "Success"
STATUS_PARTIAL_ERROR = "Partial Error"
STATUS_ERROR = "Error"

# ErrorRecord.kind for inventory failures
ERROR_KIND_COLLECTION = "collection"

# =============================================================================
# Subscription / VM State
# =============================================================================

SUBSCRIPTION_STATE_ENABLED = "Enabled"

# Normalized power states (suffix of the "PowerState/<state>" status code)
POWER_STATES_OFF = {"deallocated", "deallocating", "stopped", "stopping"}

# 8-4-4-4-12 hexadecimal
SUBSCRIPTION_ID_PATTERN = r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$'

# =============================================================================
# Default Configuration Values
# =============================================================================

DEFAULT_THROTTLE_LIMIT = 10
MIN_THROTTLE_LIMIT = 1
MAX_THROTTLE_LIMIT = 50

DEFAULT_MODE = MODE_BOTH

# Inventory pass retry: first pass plus up to two retries
COLLECTION_MAX_ATTEMPTS = 3
COLLECTION_BACKOFF_SECONDS = 5.0  # multiplied by attempt number
COLLECTION_MAX_BACKOFF_SECONDS = 30.0

# =============================================================================
# Report
# =============================================================================

REPORT_COLUMNS = [
    "Timestamp",
    "VMName",
    "ResourceGroup",
    "Subscription",
    "SubscriptionId",
    "Applied",
    "Status",
    "Message",
]

REPORT_FILE_PREFIX = "ahub_license_report"
RESULT_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
MESSAGE_SEPARATOR = "; "
