"""Credential lifecycle orchestration.

One ``CredentialLifecycle`` call serves one operator request. For a
regeneration the steps are:

  1. generate   stage a fresh key pair (nothing live is touched)
  2. backup     snapshot the algorithm's current key files and
                authorized_keys (ARCHIVE policy), or get explicit operator
                confirmation to discard them (DELETE policy)
  3. install    atomically move the staged pair into ~/.ssh
  4. reconcile  snapshot sshd_config, then bring the directives into effect
                and validate with ``sshd -t``
  5. authorize  update authorized_keys from the new public key
  6. restart    restart the daemon; it must report active afterwards
  7. disclose   optionally show the private key, after confirmation

Every error raised inside a step carries ``exc.step``. Steps 1-3 never
leave a half-installed key behind; a validation failure in step 4 restores
the pre-change sshd_config when ``rollback_invalid_config`` is set.
"""

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .authz import AuthorizationListManager
from .backup import BackupArchive, BackupRecord
from .core.audit_log import EventSeverity, EventType, log_security_event
from .core.locking import LifecycleLock
from .core.settings import AuthorizationMode, OnRegenerate, Settings
from .exceptions import (
    BackupError,
    BackupNotFoundError,
    ConfigSyntaxError,
    KeyStoreIOError,
    KeywardenError,
    OperatorAbort,
    ServiceError,
)
from .keys import (
    PRIVATE_KEY_MODE,
    PUBLIC_KEY_MODE,
    SSH_DIR_MODE,
    KeyAlgorithm,
    KeyGenerator,
    KeyMaterialStore,
    KeyPair,
)
from .prompts import ConsolePrompter, Prompter
from .service import SystemdServiceController
from .sshd import ConfigReconciler, DirectiveState, ReconcileResult, SshdSyntaxChecker

logger = logging.getLogger(__name__)

BACKUP_KINDS = ("keys", "config")


@dataclass
class RegenerationRequest:
    """What the operator asked for. Unset fields fall back to Settings."""
    algorithm: Union[KeyAlgorithm, str]
    bits: Optional[int] = None
    comment: Optional[str] = None
    on_regenerate: Optional[OnRegenerate] = None
    auth_mode: Optional[AuthorizationMode] = None
    directives: Optional[Dict[str, str]] = None
    reconcile_config: bool = True
    restart_service: bool = True
    disclose_private_key: bool = False


@dataclass
class LifecycleResult:
    operation: str
    success: bool = False
    steps_completed: List[str] = field(default_factory=list)
    key: Optional[KeyPair] = None
    fingerprint: str = ""
    key_backup: Optional[BackupRecord] = None
    config_backup: Optional[BackupRecord] = None
    config: Optional[ReconcileResult] = None
    authorization_changed: bool = False
    restored_files: List[str] = field(default_factory=list)
    private_key: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "success": self.success,
            "steps_completed": list(self.steps_completed),
            "key": self.key.describe() if self.key else None,
            "fingerprint": self.fingerprint,
            "key_backup": self.key_backup.backup_id if self.key_backup else None,
            "config_backup": self.config_backup.backup_id if self.config_backup else None,
            "config_changed": self.config.changed if self.config else False,
            "authorization_changed": self.authorization_changed,
            "restored_files": list(self.restored_files),
            "warnings": list(self.warnings),
        }


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str = ""


@dataclass
class VerificationReport:
    checks: List[CheckResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(c.ok for c in self.checks)

    def add(self, name: str, ok: bool, detail: str = "") -> None:
        self.checks.append(CheckResult(name, ok, detail))


@dataclass
class KeyInfo:
    algorithm: KeyAlgorithm
    private_path: str
    public_path: str
    fingerprint: str
    comment: str
    private_mode: Optional[int]
    public_mode: Optional[int]
    private_size: int
    authorized: bool


def _mode_of(path) -> Optional[int]:
    try:
        return os.stat(path).st_mode & 0o777
    except FileNotFoundError:
        return None


def _audit(event_type: EventType, message: str,
           severity: EventSeverity = EventSeverity.INFO, **details) -> None:
    log_security_event(event_type, severity, message, details=details)


class CredentialLifecycle:
    """Orchestrates key store, archive, reconciler and authorization list.

    Every collaborator can be injected; by default they are built from
    ``settings``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        generator: Optional[KeyGenerator] = None,
        store: Optional[KeyMaterialStore] = None,
        key_archive: Optional[BackupArchive] = None,
        config_archive: Optional[BackupArchive] = None,
        reconciler: Optional[ConfigReconciler] = None,
        authz: Optional[AuthorizationListManager] = None,
        service=None,
        prompter: Optional[Prompter] = None,
    ):
        self.settings = settings or Settings.from_env()
        s = self.settings
        self.generator = generator or KeyGenerator(
            backend=s.keygen_backend, ssh_keygen_binary=s.ssh_keygen_binary
        )
        self.store = store or KeyMaterialStore(s.ssh_dir)
        self.key_archive = key_archive or BackupArchive(s.archive_dir)
        self.config_archive = config_archive or BackupArchive(s.sshd_backup_dir)
        self.reconciler = reconciler or ConfigReconciler(SshdSyntaxChecker(s.sshd_binary))
        self.authz = authz or AuthorizationListManager(s.authorized_keys)
        self.service = service or SystemdServiceController()
        self.prompter = prompter or ConsolePrompter()

    # ── Step plumbing ──────────────────────────────────────────────

    @contextmanager
    def _step(self, name: str, result: Optional[LifecycleResult] = None):
        """Tag any error raised inside the block with the step name."""
        logger.debug("Step %s: start", name)
        try:
            yield
        except KeywardenError as e:
            if e.step is None:
                e.step = name
            raise
        except OSError as e:
            err = KeyStoreIOError(f"{name} failed: {e}")
            err.step = name
            raise err from e
        if result is not None:
            result.steps_completed.append(name)

    @contextmanager
    def _operation(self, operation: str):
        """Hold the lifecycle lock and audit failures of one operation."""
        try:
            with LifecycleLock(self.settings.lock_path):
                yield
        except OperatorAbort as e:
            _audit(EventType.OPERATOR_ABORT, str(e), EventSeverity.WARNING,
                   operation=operation, step=e.step)
            raise
        except KeywardenError as e:
            logger.error("%s failed at step %s: %s", operation, e.step, e)
            _audit(EventType.LIFECYCLE_FAILED, str(e), EventSeverity.CRITICAL,
                   operation=operation, step=e.step, error=type(e).__name__)
            raise

    def _require(self, prompt: str) -> None:
        if not self.prompter.confirm(prompt):
            raise OperatorAbort(f"Operator declined: {prompt}")

    # ── Regenerate ─────────────────────────────────────────────────

    def regenerate(self, request: RegenerationRequest) -> LifecycleResult:
        """Replace the key pair for one algorithm and bring sshd in line."""
        s = self.settings
        policy = request.on_regenerate or s.on_regenerate
        mode = request.auth_mode or s.auth_mode
        result = LifecycleResult(operation="regenerate")

        with self._operation("regenerate"):
            with self._step("generate", result):
                algorithm = request.algorithm
                if not isinstance(algorithm, KeyAlgorithm):
                    algorithm = KeyAlgorithm.parse(algorithm)
                staged = self.generator.generate(
                    algorithm, request.bits, request.comment or s.comment
                )
                result.fingerprint = staged.fingerprint()
                _audit(EventType.KEY_GENERATED, f"Generated {staged.describe()} key",
                       algorithm=algorithm.value, bits=staged.bits,
                       fingerprint=result.fingerprint)

            try:
                self._retire(algorithm, policy, result)
                with self._step("install", result):
                    installed = self.store.install(staged)
                    result.key = installed
                    _audit(EventType.KEY_INSTALLED, f"Installed {installed.describe()} key",
                           path=str(installed.private_path), fingerprint=result.fingerprint)
            finally:
                self.generator.discard(staged)

            if request.reconcile_config:
                self._reconcile(request.directives or s.directives, result)

            with self._step("authorize", result):
                public_key = installed.read_public_key()
                if mode is AuthorizationMode.EXCLUSIVE:
                    result.authorization_changed = self.authz.set_exclusive(public_key)
                    event = EventType.AUTHORIZATION_REPLACED
                else:
                    result.authorization_changed = self.authz.append_unique(public_key)
                    event = EventType.AUTHORIZATION_APPENDED
                if result.authorization_changed:
                    _audit(event, f"authorized_keys updated ({mode.value})",
                           path=str(self.authz.path), fingerprint=result.fingerprint)

            if request.restart_service:
                self._restart(result)

            if request.disclose_private_key:
                with self._step("disclose", result):
                    self._disclose(installed, result)

            result.success = True
            logger.info("Regenerated %s key %s", installed.describe(), result.fingerprint)
        return result

    def _retire(self, algorithm: KeyAlgorithm, policy: OnRegenerate,
                result: LifecycleResult) -> None:
        """Make the algorithm's current material recoverable, or get consent to lose it.

        authorized_keys is archived under either policy; DELETE only skips
        the key pair itself.
        """
        private, public = self.store.paths_for(algorithm)
        sources = [private, public, self.authz.path]
        if policy is OnRegenerate.DELETE:
            with self._step("confirm", result):
                if self.store.exists(algorithm):
                    self._require(
                        f"The existing {algorithm.value} key will be replaced WITHOUT a "
                        f"backup and cannot be recovered. Continue?"
                    )
                    logger.warning("Discarding existing %s key without backup", algorithm.value)
            sources = [self.authz.path]

        with self._step("backup", result):
            record = self.key_archive.snapshot(sources)
            result.key_backup = record
            if record is not None:
                _audit(EventType.BACKUP_CREATED, f"Backed up {algorithm.value} key material",
                       backup_id=record.backup_id, files=[e.name for e in record.entries])

    # ── Configure ──────────────────────────────────────────────────

    def configure(self, directives: Optional[Dict[str, str]] = None,
                  restart_service: bool = True) -> LifecycleResult:
        """Reconcile sshd_config (and restart the daemon if it changed)."""
        result = LifecycleResult(operation="configure")
        with self._operation("configure"):
            self._reconcile(directives or self.settings.directives, result)
            if restart_service and result.config is not None and result.config.changed:
                self._restart(result)
            result.success = True
        return result

    def _reconcile(self, directives: Dict[str, str], result: LifecycleResult) -> None:
        path = self.settings.sshd_config
        with self._step("reconcile", result):
            backup = None
            if self.reconciler.needs_changes(path, directives):
                try:
                    backup = self.config_archive.snapshot([path])
                except BackupError as e:
                    e.step = "config-backup"
                    raise
                result.config_backup = backup
                if backup is not None:
                    _audit(EventType.BACKUP_CREATED, "Backed up sshd_config",
                           backup_id=backup.backup_id)

            try:
                result.config = self.reconciler.reconcile(path, directives)
            except ConfigSyntaxError as e:
                _audit(EventType.CONFIG_INVALID, "sshd rejected reconciled config",
                       EventSeverity.CRITICAL, path=str(path), output=e.output)
                if self.settings.rollback_invalid_config and backup is not None:
                    self.config_archive.restore(backup)
                    result.warnings.append(f"sshd_config restored from {backup.backup_id}")
                    _audit(EventType.CONFIG_ROLLED_BACK, "sshd_config rolled back",
                           EventSeverity.WARNING, backup_id=backup.backup_id)
                raise

            if result.config.changed:
                _audit(EventType.CONFIG_RECONCILED, "sshd_config reconciled",
                       path=str(path), changed=result.config.changed_keys)

    def _restart(self, result: LifecycleResult) -> None:
        with self._step("restart", result):
            self.service.restart()
            if not self.service.is_active():
                raise ServiceError("SSH service is not active after restart")
            _audit(EventType.SERVICE_RESTARTED, "SSH service restarted")

    def _disclose(self, key: KeyPair, result: LifecycleResult) -> None:
        if not self.prompter.confirm(
            "Display the new private key on this terminal? Anyone who sees it can log in."
        ):
            return
        result.private_key = key.read_private_key()
        _audit(EventType.KEY_DISCLOSED, "Private key displayed to operator",
               EventSeverity.WARNING, fingerprint=result.fingerprint)

    # ── Delete ─────────────────────────────────────────────────────

    def delete_keys(self, algorithm: Union[KeyAlgorithm, str], revoke: bool = True) -> LifecycleResult:
        """Back up, then remove one algorithm's key pair (and its authorization)."""
        if not isinstance(algorithm, KeyAlgorithm):
            algorithm = KeyAlgorithm.parse(algorithm)
        result = LifecycleResult(operation="delete")

        with self._operation("delete"):
            if not self.store.exists(algorithm):
                result.warnings.append(f"No {algorithm.value} key installed")
                result.success = True
                return result

            with self._step("confirm", result):
                self._require(f"Delete the {algorithm.value} key pair from {self.store.ssh_dir}?")

            with self._step("backup", result):
                private, public = self.store.paths_for(algorithm)
                result.key_backup = self.key_archive.snapshot([private, public, self.authz.path])
                if result.key_backup is not None:
                    _audit(EventType.BACKUP_CREATED, f"Backed up {algorithm.value} key before delete",
                           backup_id=result.key_backup.backup_id)

            public_key = None
            if public.exists():
                public_key = self.store.read_public_key(algorithm)

            with self._step("remove", result):
                self.store.remove(algorithm)
                _audit(EventType.KEY_REMOVED, f"Removed {algorithm.value} key pair",
                       EventSeverity.WARNING, path=str(private))

            if revoke and public_key:
                with self._step("authorize", result):
                    removed = self.authz.revoke(public_key)
                    result.authorization_changed = removed > 0
                    if removed:
                        _audit(EventType.AUTHORIZATION_REVOKED,
                               f"Revoked {removed} authorized_keys line(s)",
                               EventSeverity.WARNING, path=str(self.authz.path))
            result.success = True
        return result

    # ── Restore ────────────────────────────────────────────────────

    def archive_for(self, kind: str) -> BackupArchive:
        if kind == "keys":
            return self.key_archive
        if kind == "config":
            return self.config_archive
        raise ValueError(f"Unknown backup kind {kind!r} (expected one of {BACKUP_KINDS})")

    def list_backups(self, kind: str = "keys") -> List[BackupRecord]:
        return self.archive_for(kind).list()

    def restore(self, backup_id: Optional[str] = None, kind: str = "keys",
                restart_service: bool = False) -> LifecycleResult:
        """Restore a snapshot over the current files.

        The current files are snapshotted first, so a restore is itself
        reversible.
        """
        archive = self.archive_for(kind)
        result = LifecycleResult(operation="restore")

        with self._operation("restore"):
            with self._step("select", result):
                if backup_id is None:
                    records = archive.list()
                    if not records:
                        raise BackupNotFoundError(f"No {kind} backups under {archive.root}")
                    backup_id = self.prompter.choose(
                        "Select a backup to restore:",
                        [r.backup_id for r in records],
                        default=records[-1].backup_id,
                    )
                record = archive.get(backup_id)
                self._require(
                    f"Restore {len(record.entries)} file(s) from {record.backup_id}? "
                    f"Current files will be overwritten."
                )

            with self._step("backup", result):
                safety = archive.snapshot(record.sources)
                if kind == "config":
                    result.config_backup = safety
                else:
                    result.key_backup = safety

            with self._step("restore", result):
                restored = archive.restore(record)
                result.restored_files = [str(p) for p in restored]
                _audit(EventType.BACKUP_RESTORED, f"Restored {record.backup_id}",
                       EventSeverity.WARNING, files=result.restored_files,
                       pre_restore_backup=safety.backup_id if safety else None)

            if kind == "config":
                with self._step("validate", result):
                    self.reconciler.validate(self.settings.sshd_config)
                if restart_service:
                    self._restart(result)
            result.success = True
        return result

    # ── Install / verify / info ────────────────────────────────────

    def install_service(self) -> bool:
        """Ensure the OpenSSH server is installed, running and enabled."""
        with self._step("install-service"):
            installed_now = self.service.install()
            if not self.service.is_active():
                self.service.start()
            if not self.service.is_active():
                raise ServiceError("SSH service failed to start")
        return installed_now

    def verify(self, directives: Optional[Dict[str, str]] = None) -> VerificationReport:
        """Read-only health check of keys, authorization list and sshd_config."""
        s = self.settings
        report = VerificationReport()

        dir_mode = _mode_of(s.ssh_dir)
        report.add("ssh_dir mode", dir_mode == SSH_DIR_MODE,
                   f"{s.ssh_dir}: {oct(dir_mode) if dir_mode is not None else 'missing'}")

        keys = self.store.installed()
        report.add("key installed", bool(keys), ", ".join(k.algorithm.value for k in keys) or "none")
        for key in keys:
            priv, pub = _mode_of(key.private_path), _mode_of(key.public_path)
            report.add(f"{key.algorithm.value} private mode", priv == PRIVATE_KEY_MODE,
                       oct(priv) if priv is not None else "missing")
            report.add(f"{key.algorithm.value} public mode", pub == PUBLIC_KEY_MODE,
                       oct(pub) if pub is not None else "missing")
            if pub is not None:
                try:
                    authorized = self.authz.contains_key(key.read_public_key())
                except KeywardenError as e:
                    report.add(f"{key.algorithm.value} authorized", False, str(e))
                else:
                    report.add(f"{key.algorithm.value} authorized", authorized,
                               str(self.authz.path))

        ak_mode = _mode_of(self.authz.path)
        report.add("authorized_keys mode", ak_mode == PRIVATE_KEY_MODE,
                   oct(ak_mode) if ak_mode is not None else "missing")

        try:
            states = self.reconciler.plan(s.sshd_config, directives or s.directives)
        except KeywardenError as e:
            report.add("sshd_config directives", False, str(e))
        else:
            pending = [k for k, st in states.items() if st is not DirectiveState.ACTIVE_CORRECT]
            report.add("sshd_config directives", not pending,
                       "pending: " + ", ".join(pending) if pending else "all in effect")
            try:
                check = self.reconciler.validate(s.sshd_config)
                report.add("sshd -t", True, check.output)
            except ConfigSyntaxError as e:
                report.add("sshd -t", False, e.output)

        return report

    def info(self) -> List[KeyInfo]:
        """Installed key pairs with fingerprints and permissions."""
        entries = self.authz.entries()
        authorized = {e.material for e in entries}
        infos = []
        for key in self.store.installed():
            fingerprint, material = "unknown", None
            if key.public_path.exists():
                public = key.read_public_key()
                fingerprint = key.fingerprint()
                parts = public.split()
                if len(parts) >= 2:
                    material = (parts[0], parts[1])
            infos.append(KeyInfo(
                algorithm=key.algorithm,
                private_path=str(key.private_path),
                public_path=str(key.public_path),
                fingerprint=fingerprint,
                comment=key.comment,
                private_mode=_mode_of(key.private_path),
                public_mode=_mode_of(key.public_path),
                private_size=key.private_path.stat().st_size,
                authorized=material in authorized,
            ))
        return infos
