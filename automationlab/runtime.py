"""
Wiring: build the store, locks, remote sync and AWS clients for a config.

The CLI calls build_runtime(); build_orchestrator() is the shortcut for
callers that only need the orchestrator. Tests replace build_runtime
with in-memory parts.
"""

import logging
from dataclasses import dataclass
from typing import Any

from automationlab.clients.aws import build_registry, create_session, get_environment, make_client
from automationlab.config import AutomationLabConfig
from automationlab.locks import FileLock, LockManager, S3Lock
from automationlab.orchestrator import Orchestrator
from automationlab.remote import RemoteSync, S3StateBackend, default_state_bucket
from automationlab.schemas import EnvironmentInfo, NamingConfig
from automationlab.state_store import FileStateBackend, StateStore


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: AutomationLabConfig
    environment: EnvironmentInfo
    store: StateStore
    local_lock: LockManager
    remote: RemoteSync
    orchestrator: Orchestrator


def build_runtime(config: AutomationLabConfig, dry_run: bool = False) -> Runtime:
    """
    Resolve credentials and assemble everything a command needs.

    Raises:
        PermanentError: If the AWS credentials cannot be resolved
    """
    session = create_session(config.profile, config.region)
    environment = get_environment(session, config.region, config.profile)
    logger.debug(f"Using account {environment.account_id} in {environment.region}")

    policy = config.retry
    lock_kwargs: dict[str, Any] = {
        "stale_after": policy.lock_stale_after,
        "poll_interval": policy.lock_poll_interval,
    }
    naming = NamingConfig(project_tag=config.project_tag, name_prefix=config.name_prefix)

    local = FileStateBackend(config.state_file)
    local_lock = FileLock(config.lock_file, **lock_kwargs)
    store = StateStore(
        local,
        local_lock,
        workspace=config.workspace,
        environment=environment,
        naming=naming,
        lock_timeout=policy.lock_timeout,
    )

    protected: tuple[str, ...] = ()
    if config.remote_enabled:
        s3 = make_client(session, "s3", policy.aws_max_attempts)
        bucket = config.state_s3_bucket or default_state_bucket(
            config.name_prefix, environment.account_id, config.region
        )
        remote = RemoteSync(
            local,
            remote=S3StateBackend(s3, bucket, config.remote_state_key),
            lock=S3Lock(s3, bucket, config.remote_lock_key, **lock_kwargs),
            s3_client=s3,
            region=config.region,
            naming=naming,
            lock_timeout=policy.lock_timeout,
        )
        protected = (bucket,)
    else:
        remote = RemoteSync(local)

    clients = build_registry(session, config, protected_buckets=protected)
    orchestrator = Orchestrator(
        store,
        clients,
        config,
        remote=remote,
        environment=environment,
        dry_run=dry_run,
    )
    return Runtime(
        config=config,
        environment=environment,
        store=store,
        local_lock=local_lock,
        remote=remote,
        orchestrator=orchestrator,
    )


def build_orchestrator(config: AutomationLabConfig, dry_run: bool = False) -> Orchestrator:
    return build_runtime(config, dry_run=dry_run).orchestrator
