"""Module defining various global constants."""

# cloudbridge version
VERSION = "1.0.0"

# Name reported as the default volume label
FILESYSTEM_NAME = "cloudbridge"

# Allocation granularity of cached file contents.
SECTOR_SIZE = 512
SECTORS_PER_ALLOCATION_UNIT = 1
ALLOCATION_UNIT = SECTOR_SIZE * SECTORS_PER_ALLOCATION_UNIT

# Window after a delete during which listings of the same subtree may still be stale,
# along with the retry schedule used to wait for the server to catch up.
RECONCILE_WINDOW = 1.0
RECONCILE_PRE_DELAY = 0.3
RECONCILE_BASE_DELAY = 0.3
RECONCILE_MAX_ATTEMPTS = 5

# Lifetime of memoized remote state like public links and account quota.
LINK_CACHE_TTL = 30.0
ACCOUNT_CACHE_TTL = 30.0

# Number of entries requested per folder listing page.
LIST_PAGE_SIZE = 1000

# Security descriptor of the root directory unless configured otherwise.
DEFAULT_ROOT_SECURITY = "O:BAG:BAD:P(A;;FA;;;SY)(A;;FA;;;BA)(A;;FA;;;WD)"
