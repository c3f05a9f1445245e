# flint/mongo_collections.py

USERS = "users"
CONNECTED_ACCOUNTS = "connected_accounts"
HOLDINGS = "holdings"
TRADES = "trades"
WATCHLIST = "watchlist"
PAYMENTS = "payments"
ACTIVITY_LOG = "activity_log"

# Notes:
# - All docs include userId (ObjectId).
# - CONNECTED_ACCOUNTS are keyed by (userId, provider, externalAccountId) and
#   soft-deleted (isActive=False) on disconnect.
# - PAYMENTS use Teller's paymentId as a natural unique key.
# - WATCHLIST holds one doc per (userId, symbol).
