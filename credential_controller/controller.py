"""
RDS Credential Controller

Keeps the credentials of an Aurora / RDS PostgreSQL cluster's admin identity
and named roles in line with a declared configuration (a YAML file or a
Kubernetes ConfigMap).

Features:
- Password generation for identities without a declared password
- KMS-encrypted declared passwords, rotated when the declared value changes
- Secrets Manager storage at rds/<cluster>/<identity>/<database>
- Secrets stored only after the database accepted the credential
- Admin first, then roles concurrently, with per-identity failure isolation
- Database, extension and privilege management
- Dry-run mode support
- Prometheus metrics exposition
"""

import json
import logging
import signal
import sys
import threading
from datetime import datetime
from typing import Optional

from credential_controller.aws import build_client
from credential_controller.config import BLUE, GREEN, RED, RESET, WHITE, Config
from credential_controller.database import PostgresRoleManager
from credential_controller.declared import DeclaredState, KubernetesClient, load_declared_state
from credential_controller.errors import PolicyViolation
from credential_controller.kms import KmsEncryptionAdapter
from credential_controller.metrics import Metrics
from credential_controller.models import Outcome, ReconcileReport
from credential_controller.reconciler import Reconciler
from credential_controller.secret_store import SecretsManagerStore

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger("credential-controller")


class CredentialController:
    """
    Main controller: loads the declared state and reconciles it every cycle
    """

    def __init__(self):
        self.k8s_client = None if Config.CONFIG_FILE else KubernetesClient()
        self.kms_client = build_client('kms')
        self.kms = None
        self.store = None
        self.role_manager = None
        self.rds_client = build_client('rds')
        self.metrics = Metrics()
        self.cancel_event = threading.Event()
        self._cluster = None
        logger.info("RDS Credential Controller initialized")

    def build_reconciler(self, declared: DeclaredState) -> Reconciler:
        """Wire adapters for the declared cluster; rebuilt when the cluster changes"""
        target = declared.target
        if self._cluster != target:
            if self.role_manager:
                self.role_manager.close()
            # Ciphertexts are bound to the cluster they were declared for
            self.kms = KmsEncryptionAdapter(
                Config.KMS_KEY_ID,
                client=self.kms_client,
                encryption_context={'cluster': target.identifier},
            )
            self.role_manager = PostgresRoleManager(target, rds_client=self.rds_client)
            self.store = SecretsManagerStore(tags={
                'cluster': target.identifier,
                'managed-by': 'credential-controller',
            })
            self._cluster = target
        return Reconciler(
            kms=self.kms,
            store=self.store,
            role_manager=self.role_manager,
            fingerprint_key=Config.FINGERPRINT_KEY.encode('utf-8'),
            max_workers=Config.MAX_WORKERS,
            dry_run=Config.DRY_RUN,
            cancel_event=self.cancel_event,
        )

    def reconcile_once(self) -> Optional[ReconcileReport]:
        """
        Load the declared state and reconcile it

        Returns:
            The run's report, or None when there was nothing to reconcile
        """
        declared = load_declared_state(self.k8s_client)
        if declared is None:
            logger.error("No declared configuration found, skipping reconciliation")
            self.metrics.record_error()
            return None

        reconciler = self.build_reconciler(declared)
        report = reconciler.reconcile(declared)
        self.metrics.record_reconciliation(report)
        self.log_summary(report)
        return report

    def log_summary(self, report: ReconcileReport):
        logger.info("=" * 60)
        logger.info(f"{WHITE}Reconciliation Summary:{RESET}")
        for result in report.results:
            color = RED if result.outcome == Outcome.FAILED else WHITE
            logger.info(f"  • {color}{result.describe()}{RESET}")
        for database in report.databases:
            suffix = f"({database.reason})" if database.reason else ""
            logger.info(f"  • database {database.name}: {database.outcome.value}{suffix}")
        logger.info(f"  • Created: {report.count(Outcome.CREATED)}")
        logger.info(f"  • Rotated: {report.count(Outcome.ROTATED)}")
        logger.info(f"  • Updated: {report.count(Outcome.UPDATED)}")
        logger.info(f"  • Unchanged: {report.count(Outcome.UNCHANGED)}")
        logger.info(f"  • Failed: {report.count(Outcome.FAILED)}")
        logger.info(f"  • Duration: {report.duration_seconds():.2f}s")
        logger.debug(f"Reconciliation report: {json.dumps(report.to_dict(), sort_keys=True)}")
        logger.info("=" * 60)

    def run_reconciliation_loop(self):
        """
        Main control loop; a failed identity is retried by the next cycle
        """
        logger.info(f"{GREEN}Controller started (DRY_RUN={Config.DRY_RUN}){RESET}")
        logger.info(f"Sync interval: {Config.SYNC_INTERVAL}s")

        while not self.cancel_event.is_set():
            try:
                logger.info("=" * 60)
                logger.info(f"Starting reconciliation cycle at {datetime.now().isoformat()}")
                self.reconcile_once()
            except PolicyViolation as e:
                logger.error(f"{RED}Declared configuration rejected, nothing applied: {e}{RESET}")
                self.metrics.record_error()
            except Exception as e:
                logger.error(f"Unexpected error in reconciliation loop: {e}", exc_info=True)
                self.metrics.record_error()

            if Config.METRICS_FILE:
                self.metrics.write_textfile(Config.METRICS_FILE)

            # Sleep until next cycle
            logger.info(f"{BLUE}Sleeping for {Config.SYNC_INTERVAL}s...{RESET}")
            self.cancel_event.wait(Config.SYNC_INTERVAL)

    def run_once(self) -> int:
        """Single reconciliation; exit status 1 when anything failed"""
        try:
            report = self.reconcile_once()
        except PolicyViolation as e:
            logger.error(f"{RED}Declared configuration rejected, nothing applied: {e}{RESET}")
            return 1
        finally:
            if Config.METRICS_FILE:
                self.metrics.write_textfile(Config.METRICS_FILE)
        if report is None or report.failed:
            return 1
        return 0

    def stop(self):
        """Stop identities that have not started applying; committed ones stay committed"""
        self.cancel_event.set()

    def cleanup(self):
        """Cleanup resources"""
        logger.info("Shutting down controller...")
        if self.role_manager:
            self.role_manager.close()


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Main entry point"""
    controller = None
    exit_code = 0
    try:
        controller = CredentialController()
        signal.signal(signal.SIGTERM, lambda signum, frame: controller.stop())
        if Config.RUN_ONCE:
            exit_code = controller.run_once()
        else:
            controller.run_reconciliation_loop()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
        if controller:
            controller.stop()
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        exit_code = 1
    finally:
        if controller:
            controller.cleanup()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
