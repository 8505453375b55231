# Constants.py
# Description: Constants for the application
#
# Imports
#
# 3rd-Party Imports
#
# Local Imports
#
########################################################################################################################
#
# Functions:

# --- Local Settings Row ---
SETTING_ROW_ID = 1

# --- Syncable Tables ---
TABLE_CLIENT = "client"
TABLE_INVOICE = "invoice"
TABLE_EXPENSE = "expense"
TABLE_AUTOMATION_RULE = "automation_rule"
TABLE_SETTING = "setting"

# Tables reconciled by full / merge runs, parents first.
SYNC_TABLES = (TABLE_CLIENT, TABLE_INVOICE, TABLE_EXPENSE)

# force_pull: local delete order (children first) and re-insert order (parents first)
FORCE_PULL_DELETE_ORDER = (TABLE_AUTOMATION_RULE, TABLE_EXPENSE, TABLE_INVOICE, TABLE_CLIENT, TABLE_SETTING)
FORCE_PULL_INSERT_ORDER = (TABLE_SETTING, TABLE_CLIENT, TABLE_INVOICE, TABLE_EXPENSE, TABLE_AUTOMATION_RULE)

# force_push: remote delete order (children first) and insert order (parents first)
FORCE_PUSH_DELETE_ORDER = (TABLE_AUTOMATION_RULE, TABLE_EXPENSE, TABLE_INVOICE, TABLE_CLIENT)
FORCE_PUSH_INSERT_ORDER = (TABLE_CLIENT, TABLE_INVOICE, TABLE_EXPENSE)

# Tables whose absence on the remote side is tolerated
OPTIONAL_REMOTE_TABLES = frozenset({TABLE_AUTOMATION_RULE, TABLE_SETTING})

# --- Remote Storage ---
DEFAULT_BUCKET = "bills-app"
DOCUMENT_CATEGORIES = ("bills", "expenses")
CONFIG_DOCUMENT_FILENAME = "bills-app.config.json"
CONFIG_DOCUMENT_REMOTE_KEY = f"config/{CONFIG_DOCUMENT_FILENAME}"
CONFIG_DOCUMENT_VERSION = "1.0.0"

# --- Credentials ---
ELEVATED_ROLES = frozenset({"service_role"})
ELEVATED_KEY_PREFIXES = ("sb_secret_",)
CREDENTIAL_ALGO = "aes-256-gcm"

# --- Conflict policy default ---
DEFAULT_CONFLICT_POLICY = "cloud_wins"

#
# End of Constants.py
########################################################################################################################
