import os

# ANSI color codes
BLUE = "\033[94m"
RED = "\033[91m"
WHITE = "\033[97m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RESET = "\033[0m"


class Config:
    """Controller configuration loaded from environment variables"""

    # AWS settings
    AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
    KMS_KEY_ID = os.getenv("KMS_KEY_ID", "alias/rds-credentials")
    AWS_CONNECT_TIMEOUT = float(os.getenv("AWS_CONNECT_TIMEOUT", "5"))
    AWS_READ_TIMEOUT = float(os.getenv("AWS_READ_TIMEOUT", "10"))

    # Key for the HMAC fingerprint of stored plaintexts
    FINGERPRINT_KEY = os.getenv("FINGERPRINT_KEY", "")

    # Declared configuration source: a local file wins over the ConfigMap
    CONFIG_FILE = os.getenv("CONFIG_FILE", "")
    NAMESPACE = os.getenv("NAMESPACE", "postgres")
    CONFIGMAP_NAME = os.getenv("CONFIGMAP_NAME", "rds-credentials-config")
    CONFIGMAP_KEY = os.getenv("CONFIGMAP_KEY", "credentials.yaml")

    # PostgreSQL settings
    DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))
    DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "15000"))
    DB_SSLMODE = os.getenv("DB_SSLMODE", "require")
    DB_POOL_MIN_CONN = int(os.getenv("DB_POOL_MIN_CONN", "1"))
    DB_POOL_MAX_CONN = int(os.getenv("DB_POOL_MAX_CONN", "5"))

    # Seconds to wait after the master password changes through the RDS API
    ADMIN_PROPAGATION_WAIT = float(os.getenv("ADMIN_PROPAGATION_WAIT", "10"))

    # Controller settings
    SYNC_INTERVAL = int(os.getenv("SYNC_INTERVAL", "300"))
    RUN_ONCE = os.getenv("RUN_ONCE", "false").lower() == "true"
    DRY_RUN = os.getenv("DRY_RUN", "false").lower() == "true"
    MAX_RETRIES = int(os.getenv("MAX_RETRIES", "5"))
    RETRY_BACKOFF_BASE = float(os.getenv("RETRY_BACKOFF_BASE", "2.0"))
    MAX_WORKERS = int(os.getenv("MAX_WORKERS", "4"))
    METRICS_FILE = os.getenv("METRICS_FILE", "")

    # Built-in and RDS-managed roles that can never be declared
    SYSTEM_ROLES = {
        'postgres', 'pg_monitor', 'pg_read_all_settings', 'pg_read_all_stats',
        'pg_stat_scan_tables', 'pg_read_server_files', 'pg_write_server_files',
        'pg_execute_server_program', 'pg_signal_backend', 'rds_superuser',
        'rds_replication', 'rds_iam', 'rds_password', 'rdsadmin'
    }
