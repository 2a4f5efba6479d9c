# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

"""Managed engines hosted inside sandboxes.

Each instance is one sandbox running the engine process; every operation is an
engine CLI command executed through the sandbox session.
"""

import asyncio
import re
import shlex
import uuid
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from coreason_orchestrator.errors import ProviderError
from coreason_orchestrator.models import ConnectionInfo, ResourceConfig, TenantRecord
from coreason_orchestrator.providers.resource import (
    BackupArtifact,
    HealthReport,
    InstanceMetrics,
    ProvisionedInstance,
    ResourceProvider,
)
from coreason_orchestrator.providers.sandbox import CommandResult, SandboxProvider, SandboxSession

# Prints "<load1> <cpu count> <used memory fraction>"
HOST_METRICS_COMMAND = (
    "echo $(cut -d' ' -f1 /proc/loadavg) $(nproc) "
    "$(free -b | awk '/Mem:/ {printf \"%.4f\", $3/$2}')"
)

_IDENTIFIER_RE = re.compile(r"[^a-z0-9_]")


def safe_identifier(value: str) -> str:
    """Lower-case ``value`` and replace anything outside ``[a-z0-9_]``."""
    return _IDENTIFIER_RE.sub("_", value.lower())


def parse_host_metrics(output: str) -> tuple[float, float]:
    """Return ``(cpu_utilization, memory_utilization)`` from HOST_METRICS_COMMAND output."""
    try:
        load, cpus, memory = output.split()[:3]
        return min(float(load) / max(int(cpus), 1), 1.0), float(memory)
    except ValueError:
        logger.warning(f"Unparseable host metrics: {output!r}")
        return 0.0, 0.0


class SandboxEngineProvider(ResourceProvider):
    """Base class for engines running in a sandbox.

    Subclasses supply the engine specific commands; this class owns the
    session bookkeeping, command execution and backup file handling.
    """

    template: str = ""
    port: int = 0
    backup_dir: str = "/var/backups/engine"

    def __init__(
        self,
        sandboxes: SandboxProvider,
        command_timeout: float = 300.0,
        ready_attempts: int = 10,
        ready_interval: float = 1.0,
    ):
        """Initializes the provider.

        Args:
            sandboxes: Sandbox provider used to host engine instances.
            command_timeout: Timeout for each engine command, in seconds.
            ready_attempts: Health probes to wait for after starting the engine.
            ready_interval: Seconds between readiness probes.
        """
        self.sandboxes = sandboxes
        self.command_timeout = command_timeout
        self.ready_attempts = ready_attempts
        self.ready_interval = ready_interval
        self._sessions: dict[str, SandboxSession] = {}

    # Engine specific hooks

    def start_command(self, config: ResourceConfig) -> str:
        raise NotImplementedError  # pragma: no cover

    def health_command(self) -> str:
        raise NotImplementedError  # pragma: no cover

    def connection_info(self, host: str, config: ResourceConfig) -> ConnectionInfo:
        raise NotImplementedError  # pragma: no cover

    # Plumbing

    async def _session(self, instance_id: str) -> SandboxSession:
        session = self._sessions.get(instance_id)
        if session is None:
            session = await self.sandboxes.connect(instance_id)
            self._sessions[instance_id] = session
        return session

    async def _run(self, instance_id: str, command: str, timeout: float | None = None) -> CommandResult:
        """Run ``command`` on the instance, raising ProviderError on a non-zero exit."""
        session = await self._session(instance_id)
        result = await session.run_command(command, timeout=timeout or self.command_timeout)
        if not result.ok:
            raise ProviderError(
                f"{self.resource_type} command failed on {instance_id} (exit {result.exit_code}): "
                f"{result.stderr.strip() or result.stdout.strip()}",
                category="resource",
                details={"instance_id": instance_id, "exit_code": result.exit_code},
            )
        return result

    def _backup_path(self, backup_id: str) -> str:
        return f"{self.backup_dir}/{backup_id}"

    async def _wait_ready(self, instance_id: str) -> None:
        for _ in range(self.ready_attempts):
            report = await self.check_health(instance_id)
            if report.healthy:
                return
            await asyncio.sleep(self.ready_interval)
        raise ProviderError(
            f"{self.resource_type} on {instance_id} did not become ready",
            category="timeout",
        )

    # ResourceProvider

    async def deploy_template(self, resource_id: str, config: ResourceConfig) -> ProvisionedInstance:
        session = await self.sandboxes.create(
            self.template,
            metadata={"resource_id": resource_id, "engine": self.resource_type},
        )
        instance_id = session.sandbox_id
        self._sessions[instance_id] = session
        try:
            await self._run(instance_id, f"mkdir -p {self.backup_dir}")
            await self._run(instance_id, self.start_command(config))
            await self._wait_ready(instance_id)
            host = session.get_host(self.port)
        except Exception:
            logger.error(f"Provisioning {self.resource_type} for {resource_id} failed, killing {instance_id}")
            self._sessions.pop(instance_id, None)
            await session.kill()
            raise
        logger.info(f"{self.resource_type} instance {instance_id} ready for {resource_id}")
        return ProvisionedInstance(
            instance_id=instance_id,
            connection=self.connection_info(host, config),
            details={"template": self.template},
        )

    async def destroy_instance(self, instance_id: str) -> None:
        session = await self._session(instance_id)
        await session.kill()
        self._sessions.pop(instance_id, None)

    async def instance_exists(self, instance_id: str) -> bool:
        live = await self.sandboxes.list()
        return any(info.sandbox_id == instance_id for info in live)

    async def create_backup(self, instance_id: str, backup_type: str = "full") -> BackupArtifact:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        # Timestamp orders backups; the suffix keeps ids from one second distinct
        backup_id = f"{backup_type}-{stamp}-{uuid.uuid4().hex[:6]}"
        path = self._backup_path(backup_id)
        await self._run(instance_id, self.backup_command(path))
        size = await self._run(instance_id, f"stat -c %s {path}")
        return BackupArtifact(backup_id=backup_id, size_bytes=int(size.stdout.strip() or 0))

    async def restore_from_backup(self, instance_id: str, backup_id: str) -> None:
        path = self._backup_path(safe_backup_id(backup_id))
        session = await self._session(instance_id)
        probe = await session.run_command(f"test -f {path}", timeout=self.command_timeout)
        if not probe.ok:
            raise ProviderError(
                f"Backup {backup_id} does not exist on {instance_id}",
                category="resource",
                retryable=False,
                details={"backup_id": backup_id},
            )
        await self._run(instance_id, self.restore_command(path))

    async def check_health(self, instance_id: str) -> HealthReport:
        session = await self._session(instance_id)
        result = await session.run_command(self.health_command(), timeout=self.command_timeout)
        return HealthReport(
            healthy=result.ok,
            checks={"engine": result.ok},
            message=(result.stdout or result.stderr).strip() or None,
        )

    async def archive_backups(self, instance_id: str, older_than_days: int, storage_class: str) -> int:
        target = f"{self.backup_dir}/{safe_identifier(storage_class)}"
        result = await self._run(
            instance_id,
            f"mkdir -p {target} && find {self.backup_dir} -maxdepth 1 -type f -mtime +{older_than_days} "
            f"-print -exec mv {{}} {target}/ ';'",
        )
        return len([line for line in result.stdout.splitlines() if line.strip()])

    async def migrate_tenant(self, source_instance_id: str, target_instance_id: str, tenant: TenantRecord) -> None:
        export_path = f"/tmp/tenant-{safe_identifier(tenant.tenant_id)}.export"
        await self._run(source_instance_id, self.tenant_export_command(tenant, export_path))
        data = await (await self._session(source_instance_id)).read_file(export_path)
        await (await self._session(target_instance_id)).write_file(export_path, data)
        await self._run(target_instance_id, self.tenant_import_command(tenant, export_path))
        logger.info(f"Tenant {tenant.tenant_id} copied from {source_instance_id} to {target_instance_id}")

    def backup_command(self, path: str) -> str:
        raise NotImplementedError  # pragma: no cover

    def restore_command(self, path: str) -> str:
        raise NotImplementedError  # pragma: no cover

    def tenant_export_command(self, tenant: TenantRecord, path: str) -> str:
        raise NotImplementedError  # pragma: no cover

    def tenant_import_command(self, tenant: TenantRecord, path: str) -> str:
        raise NotImplementedError  # pragma: no cover


def safe_backup_id(backup_id: str) -> str:
    """Reject path separators so a backup id cannot escape the backup directory."""
    if "/" in backup_id or backup_id in ("", ".", ".."):
        raise ProviderError(f"Invalid backup id {backup_id!r}", category="resource", retryable=False)
    return backup_id


class PostgresEngineProvider(SandboxEngineProvider):
    resource_type = "postgres"
    template = "postgres"
    port = 5432
    backup_dir = "/var/backups/postgres"
    data_dir = "/var/lib/postgresql/data"
    connections_per_replica = 100

    maintenance_commands = {
        "update": "vacuumdb -U postgres -h localhost --all --analyze-in-stages",
        "patch": "vacuumdb -U postgres -h localhost --all --analyze-only",
        "vacuum": "vacuumdb -U postgres -h localhost --all --analyze",
        "reindex": "reindexdb -U postgres -h localhost --all",
    }

    def psql(self, sql: str, database: str | None = None) -> str:
        db = f" -d {shlex.quote(database)}" if database else ""
        return f"psql -U postgres -h localhost -v ON_ERROR_STOP=1{db} -tAc {shlex.quote(sql)}"

    def pg_ctl(self, action: str, max_connections: int | None = None) -> str:
        options = f" -o {shlex.quote(f'-c max_connections={max_connections}')}" if max_connections else ""
        return f"pg_ctl -D {self.data_dir} -l /tmp/postgres.log{options} -w {action}"

    def start_command(self, config: ResourceConfig) -> str:
        return self.pg_ctl("start", config.replicas * self.connections_per_replica)

    def health_command(self) -> str:
        return f"pg_isready -h localhost -p {self.port}"

    def connection_info(self, host: str, config: ResourceConfig) -> ConnectionInfo:
        database = safe_identifier(config.options.get("database", config.name))
        return ConnectionInfo(
            host=host,
            port=self.port,
            url=f"postgresql://postgres@{host}:{self.port}/{database}",
            username="postgres",
            database=database,
        )

    async def deploy_template(self, resource_id: str, config: ResourceConfig) -> ProvisionedInstance:
        instance = await super().deploy_template(resource_id, config)
        database = instance.connection.database or "postgres"
        try:
            await self._run(instance.instance_id, f"createdb -U postgres -h localhost {database}")
        except ProviderError:
            await self.destroy_instance(instance.instance_id)
            raise
        return instance

    async def scale_instance(self, instance_id: str, replicas: int, config: ResourceConfig) -> None:
        connections = replicas * self.connections_per_replica
        await self._run(instance_id, self.psql(f"ALTER SYSTEM SET max_connections = {connections}"))
        await self._run(instance_id, self.pg_ctl("restart"))

    def backup_command(self, path: str) -> str:
        return f"pg_dumpall -U postgres -h localhost | gzip > {path}"

    def restore_command(self, path: str) -> str:
        return f"gunzip -c {path} | psql -U postgres -h localhost -v ON_ERROR_STOP=0 -q"

    async def get_metrics(self, instance_id: str) -> InstanceMetrics:
        host = await self._run(instance_id, HOST_METRICS_COMMAND)
        cpu, memory = parse_host_metrics(host.stdout)
        connections = await self._run(instance_id, self.psql("SELECT count(*) FROM pg_stat_activity"))
        size = await self._run(instance_id, self.psql("SELECT sum(pg_database_size(datname)) FROM pg_database"))
        commits = await self._run(
            instance_id,
            self.psql(
                "SELECT sum(xact_commit + xact_rollback) / "
                "GREATEST(EXTRACT(EPOCH FROM now() - pg_postmaster_start_time()), 1) FROM pg_stat_database"
            ),
        )
        return InstanceMetrics(
            cpu_utilization=cpu,
            memory_utilization=memory,
            storage_used_gb=int(size.stdout.strip() or 0) / 1024**3,
            connections=int(connections.stdout.strip() or 0),
            operations_per_second=float(commits.stdout.strip() or 0),
        )

    async def create_tenant(self, instance_id: str, tenant: TenantRecord, params: dict[str, Any]) -> None:
        role = safe_identifier(tenant.namespace)
        limit = tenant.limits.max_connections
        statements = [f"CREATE ROLE {role} LOGIN CONNECTION LIMIT {limit}"]
        if tenant.isolation == "schema":
            statements += [
                f"CREATE SCHEMA IF NOT EXISTS {role} AUTHORIZATION {role}",
                f"ALTER ROLE {role} SET search_path TO {role}",
            ]
        elif tenant.isolation == "database":
            statements.append(f"CREATE DATABASE {safe_identifier(params['database_name'])} OWNER {role}")
        for sql in statements:
            await self._run(instance_id, self.psql(sql))

    async def remove_tenant(self, instance_id: str, tenant: TenantRecord) -> None:
        role = safe_identifier(tenant.namespace)
        if tenant.isolation == "schema":
            await self._run(instance_id, self.psql(f"DROP SCHEMA IF EXISTS {role} CASCADE"))
        elif tenant.isolation == "database":
            await self._run(instance_id, self.psql(f"DROP DATABASE IF EXISTS {role}"))
        await self._run(instance_id, self.psql(f"DROP ROLE IF EXISTS {role}"))

    def tenant_export_command(self, tenant: TenantRecord, path: str) -> str:
        role = safe_identifier(tenant.namespace)
        if tenant.isolation == "schema":
            return f"pg_dump -U postgres -h localhost -n {role} -f {path}"
        if tenant.isolation == "database":
            return f"pg_dump -U postgres -h localhost -d {role} -f {path}"
        return f"pg_dumpall -U postgres -h localhost --roles-only -f {path}"

    def tenant_import_command(self, tenant: TenantRecord, path: str) -> str:
        role = safe_identifier(tenant.namespace)
        if tenant.isolation == "database":
            # The database itself is created by create_tenant on the target
            return f"psql -U postgres -h localhost -d {role} -q -f {path}"
        return f"psql -U postgres -h localhost -q -f {path}"

    async def initiate_failover(self, instance_id: str) -> None:
        logger.warning(f"Failing over postgres instance {instance_id} by restarting the server")
        await self._run(instance_id, self.pg_ctl("restart"))

    async def run_maintenance(self, instance_id: str, maintenance_type: str) -> str:
        if maintenance_type == "restart":
            await self._run(instance_id, self.pg_ctl("restart"))
            return "postgres restarted"
        command = self.maintenance_commands.get(maintenance_type)
        if command is None:
            raise ProviderError(f"Unknown maintenance type {maintenance_type}", category="resource", retryable=False)
        result = await self._run(instance_id, command)
        return result.stdout.strip() or f"{maintenance_type} completed"

    async def optimize(self, instance_id: str, optimization_type: str) -> str:
        sql = "VACUUM FULL" if optimization_type == "storage" else "ANALYZE"
        await self._run(instance_id, self.psql(sql))
        return f"{sql} completed"


class RedisEngineProvider(SandboxEngineProvider):
    resource_type = "redis"
    template = "redis"
    port = 6379
    backup_dir = "/var/backups/redis"
    data_dir = "/var/lib/redis"
    clients_per_replica = 1000

    def cli(self, *args: str, database: int | None = None) -> str:
        db = f" -n {database}" if database is not None else ""
        return f"redis-cli -p {self.port}{db} " + " ".join(args)

    def start_command(self, config: ResourceConfig) -> str:
        maxmemory = int(config.memory_gb * 1024)
        return (
            f"mkdir -p {self.data_dir} && redis-server --port {self.port} --daemonize yes "
            f"--dir {self.data_dir} --maxmemory {maxmemory}mb "
            f"--maxclients {config.replicas * self.clients_per_replica}"
        )

    def health_command(self) -> str:
        return self.cli("ping") + " | grep -q PONG"

    def connection_info(self, host: str, config: ResourceConfig) -> ConnectionInfo:
        return ConnectionInfo(host=host, port=self.port, url=f"redis://{host}:{self.port}/0")

    async def scale_instance(self, instance_id: str, replicas: int, config: ResourceConfig) -> None:
        await self._run(instance_id, self.cli("CONFIG", "SET", "maxclients", str(replicas * self.clients_per_replica)))

    def backup_command(self, path: str) -> str:
        return self.cli("--rdb", path)

    def restore_command(self, path: str) -> str:
        return (
            f"{self.cli('SHUTDOWN', 'NOSAVE')}; cp {path} {self.data_dir}/dump.rdb && "
            f"redis-server --port {self.port} --daemonize yes --dir {self.data_dir}"
        )

    async def get_metrics(self, instance_id: str) -> InstanceMetrics:
        host = await self._run(instance_id, HOST_METRICS_COMMAND)
        cpu, memory = parse_host_metrics(host.stdout)
        info = parse_redis_info((await self._run(instance_id, self.cli("INFO"))).stdout)
        maxmemory = int(info.get("maxmemory", "0") or 0)
        used = int(info.get("used_memory", "0") or 0)
        return InstanceMetrics(
            cpu_utilization=cpu,
            memory_utilization=used / maxmemory if maxmemory else memory,
            storage_used_gb=int(info.get("rdb_last_cow_size", "0") or 0) / 1024**3,
            connections=int(info.get("connected_clients", "0") or 0),
            operations_per_second=float(info.get("instantaneous_ops_per_sec", "0") or 0),
        )

    def _scope(self, tenant: TenantRecord) -> tuple[str, int | None]:
        if tenant.isolation == "database":
            return "*", int(tenant.namespace.removeprefix("db"))
        return f"{tenant.namespace}*", None

    async def create_tenant(self, instance_id: str, tenant: TenantRecord, params: dict[str, Any]) -> None:
        if tenant.isolation == "instance":
            logger.info(f"Tenant {tenant.tenant_id} uses a dedicated instance; nothing to carve out")
            return
        pattern, database = self._scope(tenant)
        user = safe_identifier(f"tenant_{tenant.tenant_id}")
        rules = [f"~{pattern}", "+@all", "-@dangerous"]
        if database is not None:
            rules.append(f"+select|{database}")
        await self._run(instance_id, self.cli("ACL", "SETUSER", user, "on", "nopass", *(shlex.quote(r) for r in rules)))

    async def remove_tenant(self, instance_id: str, tenant: TenantRecord) -> None:
        if tenant.isolation == "instance":
            return
        pattern, database = self._scope(tenant)
        if database is not None:
            await self._run(instance_id, self.cli("FLUSHDB", database=database))
        else:
            await self._run(
                instance_id,
                f"{self.cli('--scan', '--pattern', shlex.quote(pattern))} | xargs -r {self.cli('DEL')}",
            )
        await self._run(instance_id, self.cli("ACL", "DELUSER", safe_identifier(f"tenant_{tenant.tenant_id}")))

    def tenant_export_command(self, tenant: TenantRecord, path: str) -> str:
        pattern, database = self._scope(tenant)
        scan = self.cli("--scan", "--pattern", shlex.quote(pattern), database=database)
        dump = self.cli("--raw", "DUMP", '"$k"', database=database)
        # One "key<TAB>base64(DUMP)" line per key
        return (
            f": > {path}; {scan} | while read -r k; do "
            f"printf '%s\\t%s\\n' \"$k\" \"$({dump} | head -c -1 | base64 -w0)\" >> {path}; done"
        )

    def tenant_import_command(self, tenant: TenantRecord, path: str) -> str:
        _, database = self._scope(tenant)
        restore = self.cli("-x", "RESTORE", '"$k"', "0", "REPLACE", database=database)
        return f"while IFS=$'\\t' read -r k v; do printf '%s' \"$v\" | base64 -d | {restore} > /dev/null; done < {path}"

    async def initiate_failover(self, instance_id: str) -> None:
        logger.warning(f"Failing over redis instance {instance_id} by restarting the server")
        await self._run(
            instance_id,
            f"{self.cli('SHUTDOWN', 'SAVE')}; redis-server --port {self.port} --daemonize yes --dir {self.data_dir}",
        )

    async def run_maintenance(self, instance_id: str, maintenance_type: str) -> str:
        if maintenance_type == "restart":
            await self.initiate_failover(instance_id)
            return "redis restarted"
        result = await self._run(instance_id, self.cli("MEMORY", "PURGE"))
        await self._run(instance_id, self.cli("CONFIG", "REWRITE"))
        return result.stdout.strip() or f"{maintenance_type} completed"

    async def optimize(self, instance_id: str, optimization_type: str) -> str:
        command = "BGREWRITEAOF" if optimization_type == "storage" else "MEMORY PURGE"
        result = await self._run(instance_id, self.cli(*command.split()))
        return result.stdout.strip() or f"{command} completed"


def parse_redis_info(output: str) -> dict[str, str]:
    """Parse ``INFO`` output into a flat ``field -> value`` mapping."""
    info: dict[str, str] = {}
    for line in output.splitlines():
        if not line or line.startswith("#") or ":" not in line:
            continue
        key, _, value = line.partition(":")
        info[key.strip()] = value.strip()
    return info
