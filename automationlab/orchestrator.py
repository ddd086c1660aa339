"""
Orchestrator - apply, destroy, plan, status and verify for one workspace.

Apply is a fixed chain:

    security group -> key pair + instance -> bucket

Each step is guarded: a slot recorded as created whose resource still
exists is skipped, so re-running apply after a failure resumes where it
stopped. The chain stops at the first failure.

Destroy picks one strategy up front:
- state: delete what the state document records, in reverse dependency
  order, recording each deletion as it happens
- tag_sweep: nothing recorded as created, so discover resources by
  project tag / name prefix and delete those
Destroy keeps going after a failure and reports every failure at the end.
The security group is skipped when an instance could not be deleted.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from automationlab.clients import ResourceClientRegistry
from automationlab.config import AutomationLabConfig
from automationlab.errors import (
    AutomationLabError,
    PermanentError,
    ProvisioningError,
    TransientError,
    ValidationError,
)
from automationlab.locks import NullLock
from automationlab.remote import RemoteSync
from automationlab.schemas import (
    DESTROY_ORDER,
    EnvironmentInfo,
    ResourceKind,
    StateDocument,
)
from automationlab.state_store import StateStore
from automationlab.utils import retry_with_backoff


logger = logging.getLogger(__name__)

STEP_ERRORS = (TransientError, PermanentError, ValidationError)


class ApplyStep(str, Enum):
    NOT_STARTED = "not_started"
    SECURITY_GROUP = "security_group"
    EC2_INSTANCE = "ec2_instance"
    S3_BUCKET = "s3_bucket"
    DONE = "done"


APPLY_STEPS = (ApplyStep.SECURITY_GROUP, ApplyStep.EC2_INSTANCE, ApplyStep.S3_BUCKET)

# Slot order as apply touches them; the key pair is created inside the instance step
APPLY_ORDER = (
    ResourceKind.SECURITY_GROUP,
    ResourceKind.KEY_PAIR,
    ResourceKind.EC2_INSTANCE,
    ResourceKind.S3_BUCKET,
)


class DestroyStrategy(str, Enum):
    STATE = "state"
    TAG_SWEEP = "tag_sweep"


@dataclass
class PlannedAction:
    kind: ResourceKind
    action: str
    identifier: str = ""
    reason: str = ""


@dataclass
class Plan:
    mode: str
    actions: list[PlannedAction] = field(default_factory=list)
    strategy: Optional[DestroyStrategy] = None

    @property
    def changes(self) -> list[PlannedAction]:
        return [a for a in self.actions if a.action != "skip"]


@dataclass
class ApplyResult:
    """
    Outcome of an apply.

    Attributes:
        success: True when every step completed (or was skipped)
        completed_steps: Steps that finished, in order
        failed_step: Step that failed, if any
        error: The failure, wrapped with the resource kind
        document: State document as it stands after the run
        created: Slots created by this run
        skipped: Slots whose resources already existed
        orphaned: Resources created but not written to the state document
        planned: Intended actions (dry-run only)
    """
    success: bool = False
    completed_steps: list[ApplyStep] = field(default_factory=list)
    failed_step: Optional[ApplyStep] = None
    error: Optional[ProvisioningError] = None
    document: Optional[StateDocument] = None
    created: list[ResourceKind] = field(default_factory=list)
    skipped: list[ResourceKind] = field(default_factory=list)
    orphaned: list[tuple[ResourceKind, str]] = field(default_factory=list)
    planned: list[PlannedAction] = field(default_factory=list)

    @property
    def last_completed(self) -> ApplyStep:
        if self.success:
            return ApplyStep.DONE
        return self.completed_steps[-1] if self.completed_steps else ApplyStep.NOT_STARTED

    def failure_report(self) -> str:
        if self.success or self.failed_step is None:
            return "Apply completed"
        lines = [
            f"Last completed step: {self.last_completed.value}",
            f"Failed step: {self.failed_step.value}",
            f"Error: {self.error}",
        ]
        if self.document is not None:
            lines.append("Recorded resources:")
            for kind in ResourceKind:
                record = self.document.get(kind)
                if record is not None:
                    lines.append(f"  {kind.value}: {record.identifier} ({record.status.value})")
        if self.orphaned:
            lines.append("Created but not recorded (delete by hand or record before re-running):")
            for kind, identifier in self.orphaned:
                lines.append(f"  {kind.value}: {identifier}")
        lines.append("Re-run apply to resume; completed steps will be skipped.")
        return "\n".join(lines)


@dataclass
class DestroyFailure:
    kind: ResourceKind
    identifier: str
    error: str


@dataclass
class DestroyResult:
    strategy: DestroyStrategy
    destroyed: list[tuple[ResourceKind, str]] = field(default_factory=list)
    failures: list[DestroyFailure] = field(default_factory=list)
    document: Optional[StateDocument] = None
    planned: list[PlannedAction] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures


@dataclass
class ResourceStatusRow:
    kind: ResourceKind
    status: str
    identifier: str = ""
    live: str = ""


@dataclass
class VerifyCheck:
    name: str
    ok: bool
    detail: str = ""


@dataclass
class VerifyReport:
    checks: list[VerifyCheck] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.checks) and all(c.ok for c in self.checks)

    def add(self, name: str, ok: bool, detail: str = "") -> None:
        self.checks.append(VerifyCheck(name, ok, detail))


class Orchestrator:
    """
    Drive resource clients against the state store.

    Args:
        store: State store of the workspace
        clients: One ResourceClient per kind
        config: Naming, tagging and retry settings
        remote: Remote sync wrapped around mutating commands
        environment: Account/region of the current credentials
        dry_run: Log intended actions instead of creating or deleting
        sleep: Sleep function used between deletion retries
    """

    def __init__(
        self,
        store: StateStore,
        clients: ResourceClientRegistry,
        config: AutomationLabConfig,
        remote: Optional[RemoteSync] = None,
        environment: Optional[EnvironmentInfo] = None,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.clients = clients
        self.config = config
        self.remote = remote or RemoteSync(local=store.backend)
        self.environment = environment
        self.dry_run = dry_run
        self._sleep = sleep

    # =========================================================================
    # Apply
    # =========================================================================

    def apply(self) -> ApplyResult:
        """Create whatever is missing. Returns a result; never raises for provider failures."""
        if self.dry_run:
            return self._dry_run_view()._apply_dry_run()
        with self.remote.session():
            if self.environment is not None:
                self.store.verify_environment(self.environment)
            self.store.init()
            return self._apply()

    def _dry_run_view(self) -> "Orchestrator":
        """Orchestrator over an in-memory copy of the shared document; nothing is written locally."""
        backend = self.remote.snapshot()
        if backend is self.store.backend:
            return self
        store = StateStore(
            backend,
            NullLock(),
            workspace=self.store.workspace,
            environment=self.store.environment,
            naming=self.store.naming,
        )
        return Orchestrator(
            store,
            self.clients,
            self.config,
            environment=self.environment,
            dry_run=True,
            sleep=self._sleep,
        )

    def _apply(self) -> ApplyResult:
        result = ApplyResult()
        steps = {
            ApplyStep.SECURITY_GROUP: self._step_security_group,
            ApplyStep.EC2_INSTANCE: self._step_instance,
            ApplyStep.S3_BUCKET: self._step_bucket,
        }
        for step in APPLY_STEPS:
            logger.info(f"Step {step.value}: starting")
            try:
                steps[step](result)
            except ProvisioningError as e:
                result.failed_step = step
                result.error = e
                result.document = self.store.read()
                logger.error(f"Step {step.value} failed: {e}")
                return result
            result.completed_steps.append(step)
            logger.info(f"Step {step.value}: complete")

        result.success = True
        result.document = self.store.read()
        return result

    def _ensure(self, kind: ResourceKind, result: ApplyResult, **params):
        """Skip when recorded and still present; otherwise create and record."""
        client = self.clients.get(kind)
        record = self.store.get_resource(kind)
        try:
            if record is not None and record.is_created:
                if client.describe(record.identifier) is not None:
                    logger.info(f"{kind.value} {record.identifier} already exists, skipping")
                    result.skipped.append(kind)
                    return record
                logger.warning(f"{kind.value} {record.identifier} is recorded but no longer exists, recreating")
            record = client.create(**params)
        except STEP_ERRORS as e:
            raise ProvisioningError(kind.value, "create", e) from e

        try:
            self.store.set_resource(kind, record)
        except AutomationLabError as e:
            logger.error(
                f"{kind.value} {record.identifier} was created but could not be recorded "
                f"in {self.store.location}: {e}"
            )
            result.orphaned.append((kind, record.identifier))
            raise ProvisioningError(kind.value, "record", e) from e
        result.created.append(kind)
        logger.info(f"Created {kind.value} {record.identifier}")
        return record

    def _step_security_group(self, result: ApplyResult) -> None:
        self._ensure(ResourceKind.SECURITY_GROUP, result)

    def _step_instance(self, result: ApplyResult) -> None:
        group = self.store.get_resource(ResourceKind.SECURITY_GROUP)
        key = self._ensure(ResourceKind.KEY_PAIR, result)
        self._ensure(
            ResourceKind.EC2_INSTANCE,
            result,
            security_group_id=group.id,
            key_name=key.name,
        )

    def _step_bucket(self, result: ApplyResult) -> None:
        self._ensure(ResourceKind.S3_BUCKET, result)

    def _apply_dry_run(self) -> ApplyResult:
        result = ApplyResult(success=True, document=self.store.read())
        result.planned = self._apply_actions()
        for action in result.planned:
            if action.action == "skip":
                logger.info(f"[DRY RUN] {action.kind.value} {action.identifier} exists, would skip")
            else:
                logger.info(f"[DRY RUN] Would {action.action} {action.kind.value} ({action.reason})")
        return result

    def _apply_actions(self) -> list[PlannedAction]:
        doc = self.store.read()
        actions = []
        for kind in APPLY_ORDER:
            record = doc.get(kind)
            if record is None or not record.is_created:
                actions.append(PlannedAction(kind, "create", reason="not recorded"))
            elif self.clients.get(kind).describe(record.identifier) is None:
                actions.append(PlannedAction(kind, "create", record.identifier, "recorded but missing"))
            else:
                actions.append(PlannedAction(kind, "skip", record.identifier, "exists"))
        return actions

    # =========================================================================
    # Destroy
    # =========================================================================

    def choose_strategy(self) -> DestroyStrategy:
        if self.store.has_any_created_resource():
            return DestroyStrategy.STATE
        return DestroyStrategy.TAG_SWEEP

    def destroy(self, force: bool = False) -> DestroyResult:
        """
        Delete everything this workspace created.

        Args:
            force: Proceed despite an account/region mismatch

        Raises:
            EnvironmentMismatchError: State belongs to another account/region
        """
        if self.dry_run:
            return self._dry_run_view()._destroy_dry_run()
        with self.remote.session():
            strategy = self.choose_strategy()
            logger.info(f"Destroy strategy: {strategy.value}")
            result = DestroyResult(strategy=strategy)
            if strategy == DestroyStrategy.STATE:
                if self.environment is not None:
                    self.store.verify_environment(self.environment, force=force)
                self._destroy_from_state(result)
            else:
                self._destroy_by_sweep(result)
            result.document = self.store.read()
        if result.failures:
            logger.error(f"Destroy finished with {len(result.failures)} failure(s)")
        else:
            logger.info("Destroy finished")
        return result

    def _delete(self, kind: ResourceKind, identifier: str) -> bool:
        """
        Delete one resource.

        Returns:
            False if it was already gone, True if it was deleted
        """
        client = self.clients.get(kind)
        if client.describe(identifier) is None:
            logger.info(f"{kind.value} {identifier} no longer exists")
            return False

        client.prepare_delete(identifier)
        if kind == ResourceKind.SECURITY_GROUP:
            policy = self.config.retry
            retry_with_backoff(
                lambda: client.delete(identifier),
                max_attempts=policy.sg_delete_attempts,
                backoff_seconds=policy.sg_delete_backoff,
                backoff_multiplier=policy.sg_delete_backoff_multiplier,
                logger=logger,
                sleep=self._sleep,
            )
        else:
            client.delete(identifier)
        client.wait_deleted(identifier)
        logger.info(f"Deleted {kind.value} {identifier}")
        return True

    def _blocked_by_instance(self, kind: ResourceKind, identifier: str, result: DestroyResult) -> bool:
        """The group is only deleted once every instance delete has completed."""
        if kind != ResourceKind.SECURITY_GROUP:
            return False
        if not any(f.kind == ResourceKind.EC2_INSTANCE for f in result.failures):
            return False
        logger.error(f"Skipping {kind.value} {identifier}: an instance was not deleted")
        result.failures.append(DestroyFailure(kind, identifier, "skipped: ec2_instance was not deleted"))
        return True

    def _destroy_from_state(self, result: DestroyResult) -> None:
        doc = self.store.read()
        for kind in DESTROY_ORDER:
            record = doc.get(kind)
            if record is None or not record.is_created:
                continue
            if self._blocked_by_instance(kind, record.identifier, result):
                continue
            try:
                self._delete(kind, record.identifier)
            except STEP_ERRORS as e:
                logger.error(f"Failed to delete {kind.value} {record.identifier}: {e}")
                result.failures.append(DestroyFailure(kind, record.identifier, str(e)))
                continue
            self.store.destroy_resource(kind)
            result.destroyed.append((kind, record.identifier))

    def _discover(self, kind: ResourceKind) -> list[str]:
        return self.clients.get(kind).discover(
            self.config.tag_key, self.config.project_tag, self.config.name_prefix
        )

    def _destroy_by_sweep(self, result: DestroyResult) -> None:
        doc = self.store.read()
        for kind in DESTROY_ORDER:
            try:
                identifiers = self._discover(kind)
            except STEP_ERRORS as e:
                logger.error(f"Could not list {kind.value} resources: {e}")
                result.failures.append(DestroyFailure(kind, "*", str(e)))
                continue
            if not identifiers:
                logger.info(f"No tagged {kind.value} resources found")
            for identifier in identifiers:
                if self._blocked_by_instance(kind, identifier, result):
                    continue
                try:
                    self._delete(kind, identifier)
                except STEP_ERRORS as e:
                    logger.error(f"Failed to delete {kind.value} {identifier}: {e}")
                    result.failures.append(DestroyFailure(kind, identifier, str(e)))
                    continue
                result.destroyed.append((kind, identifier))
                record = doc.get(kind)
                if record is not None and record.identifier == identifier:
                    self.store.destroy_resource(kind)

    def _destroy_actions(self, strategy: DestroyStrategy) -> list[PlannedAction]:
        actions = []
        if strategy == DestroyStrategy.STATE:
            doc = self.store.read()
            for kind in DESTROY_ORDER:
                record = doc.get(kind)
                if record is not None and record.is_created:
                    actions.append(PlannedAction(kind, "delete", record.identifier, "recorded in state"))
        else:
            for kind in DESTROY_ORDER:
                for identifier in self._discover(kind):
                    actions.append(PlannedAction(kind, "delete", identifier, "tagged"))
        return actions

    def _destroy_dry_run(self) -> DestroyResult:
        strategy = self.choose_strategy()
        result = DestroyResult(strategy=strategy, document=self.store.read())
        result.planned = self._destroy_actions(strategy)
        for action in result.planned:
            logger.info(f"[DRY RUN] Would delete {action.kind.value} {action.identifier} ({action.reason})")
        if not result.planned:
            logger.info("[DRY RUN] Nothing to destroy")
        return result

    # =========================================================================
    # Read-only commands
    # =========================================================================

    def plan(self) -> Plan:
        """
        Destroy plan when anything is recorded as created, apply plan otherwise.

        The destroy plan lists recorded resources first, then tagged
        resources the state document does not know about.
        """
        self.remote.refresh()
        if not self.store.has_any_created_resource():
            return Plan(mode="apply", actions=self._apply_actions())

        actions = self._destroy_actions(DestroyStrategy.STATE)
        known = {(a.kind, a.identifier) for a in actions}
        for kind in DESTROY_ORDER:
            try:
                identifiers = self._discover(kind)
            except STEP_ERRORS as e:
                logger.warning(f"Could not list {kind.value} resources: {e}")
                continue
            for identifier in identifiers:
                if (kind, identifier) not in known:
                    actions.append(PlannedAction(kind, "delete", identifier, "tagged, not in state"))
        return Plan(mode="destroy", strategy=DestroyStrategy.STATE, actions=actions)

    def status(self) -> list[ResourceStatusRow]:
        """Each slot as recorded, cross-checked against the live resource."""
        self.remote.refresh()
        doc = self.store.read()
        rows = []
        for kind in ResourceKind:
            record = doc.get(kind)
            if record is None:
                rows.append(ResourceStatusRow(kind, "absent"))
                continue
            row = ResourceStatusRow(kind, record.status.value, record.identifier)
            if record.is_created:
                try:
                    live = self.clients.get(kind).describe(record.identifier)
                    row.live = "missing" if live is None else live.get("state", "exists")
                except STEP_ERRORS as e:
                    row.live = f"error: {e}"
            rows.append(row)
        return rows

    def verify(self) -> VerifyReport:
        """Check the recorded resources are live and configured as expected."""
        self.remote.refresh()
        report = VerifyReport()
        if not self.store.exists():
            report.add("state document", False, f"no state at {self.store.location}")
            return report
        doc = self.store.read()
        if not doc.created_kinds():
            report.add("state document", False, "no resources recorded as created")
            return report

        for kind in APPLY_ORDER:
            record = doc.get(kind)
            if record is None or not record.is_created:
                report.add(kind.value, False, "not created")
                continue
            try:
                live = self.clients.get(kind).describe(record.identifier)
            except STEP_ERRORS as e:
                report.add(kind.value, False, str(e))
                continue
            if live is None:
                report.add(kind.value, False, f"{record.identifier} does not exist")
                continue

            if kind == ResourceKind.EC2_INSTANCE:
                state = live.get("state")
                report.add(kind.value, state == "running", f"{record.identifier} is {state}")
            elif kind == ResourceKind.SECURITY_GROUP:
                missing = sorted(set(record.ports) - set(live.get("ports", [])))
                detail = f"missing ingress on {missing}" if missing else f"ingress on {list(record.ports)}"
                report.add(kind.value, not missing, detail)
            elif kind == ResourceKind.S3_BUCKET:
                versioning = live.get("versioning")
                report.add(kind.value, versioning == "Enabled", f"versioning {versioning}")
                absent = [key for key in record.objects if key not in live.get("objects", [])]
                report.add(
                    f"{kind.value} objects",
                    not absent,
                    f"missing {absent}" if absent else f"{len(record.objects)} object(s) present",
                )
            else:
                report.add(kind.value, True, f"{record.identifier} exists")
        return report
