"""
Role-management collaborator for an Aurora / RDS PostgreSQL cluster.

Role statements run over psycopg2 as the admin identity. The admin's own
password is the cluster master password, which PostgreSQL will not let us
change without knowing the current one, so it goes through the RDS API.
"""

import logging
import time
from typing import Iterable, Optional, Sequence, Set

import psycopg2
import psycopg2.errors
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError
from psycopg2 import pool, sql
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

from credential_controller.aws import TIMEOUT_ERRORS, error_code
from credential_controller.config import WHITE, RESET, Config
from credential_controller.errors import OperationTimeout, RoleApplyFailed
from credential_controller.models import DATABASE_PRIVILEGES, ClusterTarget, DatabaseGrant

logger = logging.getLogger("credential-controller")


def translate_db_error(error: psycopg2.Error, action: str) -> Exception:
    """Map a psycopg2 error onto the reconciler's error taxonomy"""
    if isinstance(error, psycopg2.errors.QueryCanceled):
        return OperationTimeout(f"{action} timed out: {error}")
    if isinstance(error, psycopg2.OperationalError) and 'timeout' in str(error).lower():
        return OperationTimeout(f"{action} timed out: {error}")
    return RoleApplyFailed(f"{action} failed: {str(error).strip()}")


class PostgresRoleManager:
    """Creates roles, rotates their passwords and manages memberships"""

    def __init__(self, target: ClusterTarget, rds_client: Optional[BaseClient] = None):
        self.target = target
        self.rds_client = rds_client
        self.connection_pool = None
        self._login = None

    def login_as(self, username: str, password: str):
        """
        Use these credentials for every subsequent SQL statement

        Args:
            username: Admin role name
            password: Admin password (never logged)
        """
        if self._login == (username, password) and self.connection_pool:
            return
        self.close()
        self._login = (username, password)

    def _connect_kwargs(self, dbname: Optional[str] = None) -> dict:
        if not self._login:
            raise RoleApplyFailed("No admin credential available to manage roles")
        username, password = self._login
        return dict(
            host=self.target.endpoint,
            port=self.target.port,
            dbname=dbname or self.target.database,
            user=username,
            password=password,
            sslmode=Config.DB_SSLMODE,
            connect_timeout=Config.DB_CONNECT_TIMEOUT,
            options=f"-c statement_timeout={Config.DB_STATEMENT_TIMEOUT_MS}",
        )

    def _initialize_pool(self):
        """Initialize the thread-safe connection pool"""
        try:
            # One connection per role worker; getconn does not block
            self.connection_pool = pool.ThreadedConnectionPool(
                Config.DB_POOL_MIN_CONN,
                max(Config.DB_POOL_MAX_CONN, Config.MAX_WORKERS),
                **self._connect_kwargs()
            )
            logger.info(f"Database connection pool initialized for {self.target.endpoint}")
        except psycopg2.Error as e:
            logger.error(f"Failed to initialize connection pool: {e}")
            raise translate_db_error(e, "Connecting to the cluster")

    def get_connection(self):
        """Get a connection from the pool"""
        if not self.connection_pool:
            self._initialize_pool()
        try:
            return self.connection_pool.getconn()
        except psycopg2.Error as e:
            raise translate_db_error(e, "Connecting to the cluster")

    def return_connection(self, conn):
        """Return a connection to the pool"""
        if self.connection_pool:
            self.connection_pool.putconn(conn)

    def role_exists(self, cursor, role_name: str) -> bool:
        cursor.execute("SELECT 1 FROM pg_roles WHERE rolname = %s;", (role_name,))
        return cursor.fetchone() is not None

    def ensure_roles(self, role_names: Iterable[str]) -> Set[str]:
        """
        Create every missing role as NOLOGIN so memberships can be granted
        regardless of the order the roles are reconciled in

        Returns:
            Names of the roles that were created
        """
        created = set()
        conn = None
        try:
            conn = self.get_connection()
            with conn.cursor() as cur:
                for role_name in role_names:
                    if self.role_exists(cur, role_name):
                        continue
                    cur.execute(sql.SQL("CREATE ROLE {} NOLOGIN;").format(sql.Identifier(role_name)))
                    created.add(role_name)
                    logger.info(f"{WHITE}Created role: {role_name}{RESET}")
            conn.commit()
            return created
        except psycopg2.Error as e:
            logger.error(f"Error creating roles: {e}")
            if conn:
                conn.rollback()
            raise translate_db_error(e, "Creating roles")
        finally:
            if conn:
                self.return_connection(conn)

    def create_or_alter_role(self, role_name: str, password: str, member_of: Sequence[str] = (),
                             revoke: Sequence[str] = (), admin: bool = False):
        """
        Make role_name a login role with password and the given memberships

        Args:
            role_name: Role to create or alter
            password: New password (never logged)
            member_of: Roles to grant to role_name
            revoke: Roles to revoke from role_name
            admin: Set the cluster master password instead of running SQL

        Raises:
            RoleApplyFailed: The database or RDS API rejected the change
            OperationTimeout: The change did not complete in time
        """
        if admin:
            self._set_master_password(role_name, password)
            return

        conn = None
        try:
            conn = self.get_connection()
            with conn.cursor() as cur:
                if self.role_exists(cur, role_name):
                    cur.execute(
                        sql.SQL("ALTER ROLE {} WITH LOGIN PASSWORD %s;").format(sql.Identifier(role_name)),
                        (password,)
                    )
                    logger.info(f"{WHITE}Altered role: {role_name}{RESET}")
                else:
                    cur.execute(
                        sql.SQL("CREATE ROLE {} WITH LOGIN PASSWORD %s;").format(sql.Identifier(role_name)),
                        (password,)
                    )
                    logger.info(f"{WHITE}Created role: {role_name}{RESET}")

                for parent in revoke:
                    cur.execute(
                        sql.SQL("REVOKE {} FROM {};").format(sql.Identifier(parent), sql.Identifier(role_name))
                    )
                    logger.info(f"  ↳ Revoked role {parent} from {role_name}")

                for parent in member_of:
                    cur.execute(
                        sql.SQL("GRANT {} TO {};").format(sql.Identifier(parent), sql.Identifier(role_name))
                    )
                    logger.info(f"  ↳ Granted role {parent} to {role_name}")

            conn.commit()
        except psycopg2.Error as e:
            logger.error(f"Error applying role {role_name}: {e.pgcode or e.__class__.__name__}")
            if conn:
                conn.rollback()
            raise translate_db_error(e, f"Applying role {role_name}")
        finally:
            if conn:
                self.return_connection(conn)

    def update_memberships(self, role_name: str, old_roles: Iterable[str], new_roles: Iterable[str]):
        """
        Update role memberships without touching the password

        Args:
            role_name: Role to update
            old_roles: Currently granted roles
            new_roles: Desired roles
        """
        to_revoke = set(old_roles) - set(new_roles)
        to_grant = set(new_roles) - set(old_roles)

        if not to_revoke and not to_grant:
            return

        conn = None
        try:
            conn = self.get_connection()
            with conn.cursor() as cur:
                for parent in sorted(to_revoke):
                    cur.execute(
                        sql.SQL("REVOKE {} FROM {};").format(sql.Identifier(parent), sql.Identifier(role_name))
                    )
                    logger.info(f"  ↳ Revoked role {parent} from {role_name}")

                for parent in sorted(to_grant):
                    cur.execute(
                        sql.SQL("GRANT {} TO {};").format(sql.Identifier(parent), sql.Identifier(role_name))
                    )
                    logger.info(f"  ↳ Granted role {parent} to {role_name}")

            conn.commit()
            logger.info(f"{WHITE}Updated memberships for role: {role_name}{RESET}")
        except psycopg2.Error as e:
            logger.error(f"Error updating memberships for {role_name}: {e}")
            if conn:
                conn.rollback()
            raise translate_db_error(e, f"Updating memberships of {role_name}")
        finally:
            if conn:
                self.return_connection(conn)

    def create_database(self, name: str, extensions: Sequence[str] = (),
                        privileges: Sequence[DatabaseGrant] = ()):
        """
        Create a database if missing, then its extensions and grants

        Args:
            name: Database name
            extensions: Extensions to create inside the database
            privileges: Database-level grants per role
        """
        for grant in privileges:
            invalid = {p.upper() for p in grant.grants} - DATABASE_PRIVILEGES
            if invalid:
                raise RoleApplyFailed(f"Unsupported database privileges for {grant.role}: {sorted(invalid)}")

        conn = None
        try:
            # CREATE DATABASE cannot run inside a transaction block
            conn = psycopg2.connect(**self._connect_kwargs())
            conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM pg_database WHERE datname = %s;", (name,))
                if cur.fetchone() is None:
                    cur.execute(sql.SQL("CREATE DATABASE {};").format(sql.Identifier(name)))
                    logger.info(f"{WHITE}Created database: {name}{RESET}")

                for grant in privileges:
                    cur.execute(
                        sql.SQL("GRANT {} ON DATABASE {} TO {};").format(
                            sql.SQL(", ").join(sql.SQL(p.upper()) for p in grant.grants),
                            sql.Identifier(name),
                            sql.Identifier(grant.role)
                        )
                    )
                    logger.info(f"  ↳ Granted {', '.join(grant.grants)} on {name} to {grant.role}")
        except psycopg2.Error as e:
            logger.error(f"Error creating database {name}: {e}")
            raise translate_db_error(e, f"Creating database {name}")
        finally:
            if conn:
                conn.close()

        if extensions:
            self._create_extensions(name, extensions)

    def _create_extensions(self, database: str, extensions: Sequence[str]):
        conn = None
        try:
            conn = psycopg2.connect(**self._connect_kwargs(dbname=database))
            with conn.cursor() as cur:
                for extension in extensions:
                    cur.execute(
                        sql.SQL("CREATE EXTENSION IF NOT EXISTS {};").format(sql.Identifier(extension))
                    )
                    logger.info(f"  ↳ Extension {extension} present in {database}")
            conn.commit()
        except psycopg2.Error as e:
            logger.error(f"Error creating extensions in {database}: {e}")
            if conn:
                conn.rollback()
            raise translate_db_error(e, f"Creating extensions in {database}")
        finally:
            if conn:
                conn.close()

    def _set_master_password(self, username: str, password: str):
        if self.rds_client is None:
            raise RoleApplyFailed("No RDS client configured to set the master password")
        try:
            self.rds_client.modify_db_cluster(
                DBClusterIdentifier=self.target.identifier,
                MasterUserPassword=password,
                ApplyImmediately=True,
            )
        except ClientError as e:
            code = error_code(e)
            logger.error(f"RDS rejected master password change for {self.target.identifier}: {code}")
            raise RoleApplyFailed(f"modify_db_cluster failed: {code}") from e
        except TIMEOUT_ERRORS as e:
            raise OperationTimeout(f"modify_db_cluster timed out: {e}") from e
        except BotoCoreError as e:
            raise RoleApplyFailed(f"modify_db_cluster failed: {e}") from e

        logger.info(f"{WHITE}Master password updated for {username} on {self.target.identifier}{RESET}")
        if Config.ADMIN_PROPAGATION_WAIT > 0:
            logger.info(f"Waiting {Config.ADMIN_PROPAGATION_WAIT}s for master password propagation")
            time.sleep(Config.ADMIN_PROPAGATION_WAIT)

    def close(self):
        """Close the connection pool"""
        if self.connection_pool:
            self.connection_pool.closeall()
            self.connection_pool = None
            logger.info("Database connection pool closed")
