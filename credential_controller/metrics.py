import logging
import os
import time

from credential_controller.models import Outcome, ReconcileReport

logger = logging.getLogger("credential-controller")


class Metrics:
    """Simple in-memory metrics for Prometheus exposition"""

    def __init__(self):
        self.reconciliation_count = 0
        self.last_reconciliation_timestamp = 0
        self.credentials_created = 0
        self.credentials_rotated = 0
        self.memberships_updated = 0
        self.identities_managed = 0
        self.identities_failed = 0
        self.databases_managed = 0
        self.last_error_timestamp = 0
        self.error_count = 0

    def record_reconciliation(self, report: ReconcileReport):
        """Record metrics from a reconciliation run"""
        self.reconciliation_count += 1
        self.last_reconciliation_timestamp = time.time()
        self.credentials_created += report.count(Outcome.CREATED)
        self.credentials_rotated += report.count(Outcome.ROTATED)
        self.memberships_updated += report.count(Outcome.UPDATED)
        self.identities_managed = len(report.results)
        self.identities_failed = report.count(Outcome.FAILED)
        self.databases_managed = len(report.databases)
        if report.failed:
            self.record_error()

    def record_error(self):
        self.error_count += 1
        self.last_error_timestamp = time.time()

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format"""
        return f"""# HELP credential_controller_reconciliations_total Total number of reconciliation runs
# TYPE credential_controller_reconciliations_total counter
credential_controller_reconciliations_total {self.reconciliation_count}

# HELP credential_controller_last_reconciliation_timestamp Timestamp of last reconciliation
# TYPE credential_controller_last_reconciliation_timestamp gauge
credential_controller_last_reconciliation_timestamp {self.last_reconciliation_timestamp}

# HELP credential_controller_credentials_created_total Credentials stored for the first time
# TYPE credential_controller_credentials_created_total counter
credential_controller_credentials_created_total {self.credentials_created}

# HELP credential_controller_credentials_rotated_total Credentials replaced by a new declared value
# TYPE credential_controller_credentials_rotated_total counter
credential_controller_credentials_rotated_total {self.credentials_rotated}

# HELP credential_controller_memberships_updated_total Identities whose memberships changed
# TYPE credential_controller_memberships_updated_total counter
credential_controller_memberships_updated_total {self.memberships_updated}

# HELP credential_controller_identities_managed Identities in the last run
# TYPE credential_controller_identities_managed gauge
credential_controller_identities_managed {self.identities_managed}

# HELP credential_controller_identities_failed Identities that failed in the last run
# TYPE credential_controller_identities_failed gauge
credential_controller_identities_failed {self.identities_failed}

# HELP credential_controller_databases_managed Databases in the last run
# TYPE credential_controller_databases_managed gauge
credential_controller_databases_managed {self.databases_managed}

# HELP credential_controller_errors_total Runs that ended with an error
# TYPE credential_controller_errors_total counter
credential_controller_errors_total {self.error_count}

# HELP credential_controller_last_error_timestamp Timestamp of last error
# TYPE credential_controller_last_error_timestamp gauge
credential_controller_last_error_timestamp {self.last_error_timestamp}
"""

    def write_textfile(self, path: str):
        """Atomically write the exposition for a node-exporter textfile collector"""
        tmp_path = f"{path}.tmp"
        try:
            with open(tmp_path, 'w') as f:
                f.write(self.export_prometheus())
            os.replace(tmp_path, path)
        except IOError as e:
            logger.error(f"Error writing metrics file {path}: {e}")
