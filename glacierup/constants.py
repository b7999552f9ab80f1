# Tree hash leaves are always 1 MiB windows of the archive bytes.
MIB = 1024 * 1024
LEAF_SIZE = MIB
DIGEST_SIZE = 32  # SHA-256

# Vault service constraint: part size is 1 MiB times a power of two, up to 4 GiB.
MIN_PART_SIZE = MIB
MAX_PART_SIZE = 4 * 1024 * MIB

DEFAULT_PART_SIZE = 8 * MIB
DEFAULT_CONCURRENCY = 4

# Retry budget for a single part (total attempts, not retries)
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 0.5
DEFAULT_MAX_DELAY = 30.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0

# Environment overrides read by the CLI
ENV_PART_SIZE = "GLACIERUP_PART_SIZE"
ENV_CONCURRENCY = "GLACIERUP_CONCURRENCY"

# Glacier API: "-" means the account that owns the credentials.
DEFAULT_ACCOUNT_ID = "-"
