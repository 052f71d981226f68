"""
Vault orchestration.

This module sequences every other component into the command-level
state machines:
- init
- add
- remove
- encrypt (all or one)
- decrypt (all or one)
- list / doctor

The repository configuration is passed explicitly through ``Vault``;
nothing here keeps process-wide state. Mutating steps reload the
configuration under the advisory lock and replace it atomically.

Ordering guarantees:
- Add: round-trip validation before any durable artifact, secret record
  before manifest entry
- Remove: passphrase verification before any mutation
- Bulk operations: one failing entry never stops the others
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .archive import ArchivePipeline
from .backends import FileBackend, OnePasswordBackend, SecretBackend, route
from .ciphers import Cipher, get_cipher
from .config import (
    DEFAULT_CIPHER,
    DEFAULT_LFS_THRESHOLD_MB,
    DEFAULT_STORAGE_MODE,
    MARKER_SUFFIX,
    STORAGE_1PASSWORD,
    STORAGE_FILE,
    VAULT_DIR,
)
from .errors import (
    AlreadyInitialized,
    BackendUnavailable,
    ConfigError,
    EmptyPassphrase,
    EncryptionFailed,
    MissingArchive,
    MissingSecretRecord,
    NotManaged,
    OrphanedSecretRecord,
    OutsideRepository,
    PasswordMismatch,
    PasswordVerificationFailed,
    PathNotFound,
    VaultError,
)
from .git import GitRepo
from .hooks import HookInstaller, HookResult
from .lfs import LargeObjectTiering, TieringResult
from .manifest import ManagedPath, VaultConfig, config_lock
from .paths import VaultLayout, canonicalize, ignore_pattern
from .utils import file_size_mb

logger = logging.getLogger(__name__)

RESERVED_ROOTS = (".git", VAULT_DIR)

STATUS_OK = "ok"
STATUS_MISSING_ARCHIVE = "missing-archive"
STATUS_MISSING_FILE = "missing-file"
STATUS_MISSING_SECRET = "missing-secret"
STATUS_MISSING_MARKER = "missing-marker"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AddResult:
    entry: ManagedPath
    archive: Path
    tiering: TieringResult
    resumed: bool = False
    staged: bool = True


@dataclass(frozen=True)
class RemoveResult:
    entry: ManagedPath
    removed_record: Optional[Path] = None
    pruned: bool = False
    staged: bool = True


@dataclass
class BulkResult:
    """Aggregate outcome of an encrypt-all or decrypt-all pass."""

    processed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class EntryStatus:
    hash: str
    path: str
    archive: Path
    size_mb: float
    status: str
    backend: Optional[str] = None


@dataclass(frozen=True)
class OrphanRecord:
    hash: str
    path: Path
    kind: str


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------


class Vault:
    """One repository's vault: its configuration plus the collaborators."""

    def __init__(
        self,
        git: GitRepo,
        config: VaultConfig,
        cipher: Optional[Cipher] = None,
        backends: Optional[Dict[str, SecretBackend]] = None,
        interactive: bool = False,
    ):
        self.git = git
        self.config = config
        self.layout = VaultLayout(git.root)
        self.cipher = cipher or get_cipher(config.cipher)
        self.pipeline = ArchivePipeline(self.cipher, git.root)
        self.interactive = interactive
        self._backends: Dict[str, SecretBackend] = dict(backends or {})

    @property
    def root(self) -> Path:
        return self.git.root

    @property
    def tiering(self) -> LargeObjectTiering:
        return LargeObjectTiering(self.git, self.config.lfs_threshold_mb)

    @property
    def storage_glob(self) -> str:
        return self.layout.storage_glob(self.cipher.suffix)

    def archive_for(self, entry: ManagedPath) -> Path:
        return self.layout.archive_path(entry.path, self.cipher.suffix)

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------

    def backend(self, kind: str) -> SecretBackend:
        if kind not in self._backends:
            if kind == STORAGE_FILE:
                self._backends[kind] = FileBackend(self.layout)
            elif kind == STORAGE_1PASSWORD:
                self._backends[kind] = OnePasswordBackend(
                    self.layout,
                    self.git.project_name(),
                    vault_name=self.config.onepassword_vault,
                    interactive=self.interactive,
                )
            else:
                raise ConfigError(f"Unknown storage mode: {kind}")
        return self._backends[kind]

    def backend_for(self, hash: str) -> SecretBackend:
        return self.backend(route(self.layout, self.config.storage_mode, hash))

    def _passphrase_for(self, entry: ManagedPath, override: Optional[str]) -> str:
        if override:
            return override
        return self.backend_for(entry.hash).retrieve(entry.hash)

    def _remember(self, entry: ManagedPath, passphrase: str) -> bool:
        """Store a user-supplied passphrase as the entry's record if it has none."""
        backend = self.backend(self.config.storage_mode)
        if backend.has_record(entry.hash):
            if backend.retrieve(entry.hash) != passphrase:
                logger.warning(
                    "A different password is already stored for %s; not overwriting",
                    entry.path,
                )
            return False
        backend.store(entry.hash, passphrase, metadata={"path": entry.path})
        return True

    # ------------------------------------------------------------------
    # Config persistence
    # ------------------------------------------------------------------

    def _reload_locked(self) -> VaultConfig:
        current = VaultConfig.load(self.layout)
        if current is None:
            return self.config
        return current

    def _stage(self, *paths: Path) -> bool:
        existing = [self.layout.relative(p) for p in paths if p.exists()]
        if not existing:
            return True
        staged = self.git.stage(*existing)
        if not staged:
            logger.warning("Failed to stage %s; stage them manually", ", ".join(existing))
        return staged

    # ------------------------------------------------------------------
    # Add
    # ------------------------------------------------------------------

    def resolve(self, raw_path: str | Path, base: Optional[str | Path] = None) -> str:
        """
        Canonicalize a user path for management.

        Raises:
            OutsideRepository: if it lies outside the root or inside the
                git or vault directories
        """

        relative = canonicalize(raw_path, self.root, base)
        head = relative.split("/", 1)[0]
        if head in RESERVED_ROOTS:
            raise OutsideRepository(
                f"'{relative}' is inside {head}/ and cannot be managed", path=relative
            )
        return relative

    def add(
        self,
        raw_path: str | Path,
        passphrase: str,
        confirmation: Optional[str] = None,
        base: Optional[str | Path] = None,
    ) -> AddResult:
        """
        Start managing a path.

        ``confirmation``, when given, must equal ``passphrase``.

        Raises:
            OutsideRepository, PathNotFound, AlreadyManaged, HashCollision
            EmptyPassphrase, PasswordMismatch
            OrphanedSecretRecord: a record for this hash exists with another passphrase
            BackendUnavailable, AuthRequired
            EncryptionFailed, DecryptionFailed, ExtractionFailed
        """

        relative = self.resolve(raw_path, base)
        if not os.path.lexists(self.layout.working_path(relative)):
            raise PathNotFound(f"Path not found: '{relative}'", path=relative)

        hash_ = self.config.check_insertable(relative)
        if not passphrase:
            raise EmptyPassphrase("Password cannot be empty", path=relative, hash=hash_)
        if confirmation is not None and confirmation != passphrase:
            raise PasswordMismatch("Passwords do not match", path=relative, hash=hash_)

        backend = self.backend(self.config.storage_mode)
        if isinstance(backend, OnePasswordBackend):
            backend.ensure_session()
        resumed = self._resume_orphan(backend, relative, hash_, passphrase)

        logger.info("Validating password for %s...", relative)
        self.pipeline.validate_round_trip(relative, passphrase)

        if not resumed:
            self._store_secret(backend, relative, hash_, passphrase)

        entry = ManagedPath(hash=hash_, path=relative)
        archive = self.archive_for(entry)
        logger.info("Encrypting %s...", relative)
        self.pipeline.seal(relative, archive, passphrase)
        tiering = self.tiering.apply(archive, self.storage_glob)

        with config_lock(self.layout):
            current = self._reload_locked()
            current.insert(entry)
            current.save(self.layout)
            self.config = current

        ignore_changed = self.git.add_ignore_rules(
            [ignore_pattern(relative), *self.layout.secret_ignore_patterns]
        )
        if ignore_changed:
            logger.info("Added /%s to .gitignore", relative)

        to_stage = [archive, self.layout.config_path, self.git.gitignore_path]
        if tiering.attributes_changed:
            to_stage.append(self.git.gitattributes_path)
        staged = self._stage(*to_stage)

        logger.debug("Added '%s' to vault (hash: %s)", relative, hash_)
        return AddResult(entry, archive, tiering, resumed=resumed, staged=staged)

    def _resume_orphan(
        self, backend: SecretBackend, relative: str, hash_: str, passphrase: str
    ) -> bool:
        """
        Return True if an interrupted add left a record with this passphrase.

        Raises:
            OrphanedSecretRecord: if the leftover record holds another passphrase
        """

        if not backend.has_record(hash_):
            return False
        try:
            stored = backend.retrieve(hash_)
        except MissingSecretRecord:
            stored = None
        if stored != passphrase:
            raise OrphanedSecretRecord(
                f"A leftover password record exists for '{relative}' (hash: {hash_}) "
                "with a different password. Run 'gv doctor --clean' or use the original password.",
                path=relative,
                hash=hash_,
            )
        logger.info("Resuming interrupted add of %s (hash: %s)", relative, hash_)
        return True

    def _store_secret(
        self, backend: SecretBackend, relative: str, hash_: str, passphrase: str
    ) -> None:
        backend.store(hash_, passphrase, metadata={"path": relative})
        try:
            stored = backend.retrieve(hash_)
        except VaultError:
            backend.discard(hash_)
            raise
        if stored != passphrase:
            backend.discard(hash_)
            raise EncryptionFailed(
                f"Stored password for '{relative}' could not be read back",
                path=relative,
                hash=hash_,
            )

    # ------------------------------------------------------------------
    # Remove
    # ------------------------------------------------------------------

    def remove(
        self,
        raw_path: str | Path,
        passphrase: Optional[str] = None,
        prune_ignore: bool = False,
        base: Optional[str | Path] = None,
    ) -> RemoveResult:
        """
        Stop managing a path.

        The plaintext stays in the working tree. The secret record is
        soft-deleted and the archive deleted.

        Raises:
            NotManaged: the path has no manifest entry
            MissingSecretRecord
            BackendUnavailable, AuthRequired: checked before anything changes
            MissingArchive: there is nothing to verify the passphrase against
            PasswordVerificationFailed: the passphrase does not decrypt the archive
        """

        relative = canonicalize(raw_path, self.root, base)
        entry = self.config.find_path(relative)
        if entry is None:
            raise NotManaged(f"Path not managed: '{relative}'", path=relative)

        backend = self.backend_for(entry.hash)
        if isinstance(backend, OnePasswordBackend):
            backend.ensure_session()
        if not passphrase:
            passphrase = backend.retrieve(entry.hash)

        archive = self.archive_for(entry)
        if not archive.exists():
            raise MissingArchive(
                f"Archive not found: {archive}", path=entry.path, hash=entry.hash
            )
        if not self.pipeline.verify(archive, passphrase):
            raise PasswordVerificationFailed(
                f"Password verification failed for '{entry.path}'",
                path=entry.path,
                hash=entry.hash,
            )

        with config_lock(self.layout):
            current = self._reload_locked()
            current.remove(entry.hash)
            current.save(self.layout)
            self.config = current

        removed_record = backend.mark_removed(entry.hash)

        self.git.unstage_removed(self.layout.relative(archive))
        archive.unlink(missing_ok=True)
        logger.info("Removed archive %s", archive.name)

        pruned = False
        if prune_ignore:
            patterns = [ignore_pattern(entry.path)]
            if not self.config.managed_paths:
                patterns.extend(self.layout.secret_ignore_patterns)
            pruned = self.git.remove_ignore_rules(patterns)

        staged = self._stage(self.layout.config_path, self.git.gitignore_path)
        logger.debug("Removed '%s' from vault", entry.path)
        return RemoveResult(entry, removed_record, pruned=pruned, staged=staged)

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def select(self, raw_path: Optional[str | Path] = None, base=None) -> List[ManagedPath]:
        if raw_path is None:
            return list(self.config.managed_paths)
        relative = canonicalize(raw_path, self.root, base)
        entry = self.config.find_path(relative)
        if entry is None:
            raise NotManaged(f"Path not managed: '{relative}'", path=relative)
        return [entry]

    def encrypt_all(
        self,
        raw_path: Optional[str | Path] = None,
        passphrase: Optional[str] = None,
        write: bool = False,
        force: bool = False,
        stage: bool = True,
        base: Optional[str | Path] = None,
    ) -> BulkResult:
        """
        Re-encrypt every managed path (or one) whose plaintext changed.

        Returns:
            BulkResult; ``ok`` is False if any entry failed
        """

        result = BulkResult()
        to_stage: List[Path] = []

        for entry in self.select(raw_path, base):
            working = self.layout.working_path(entry.path)
            if not os.path.lexists(working):
                message = f"Skipping {entry.path}: not found in working tree"
                logger.warning(message)
                result.skipped.append(entry.path)
                result.warnings.append(message)
                continue

            archive = self.archive_for(entry)
            try:
                secret = self._passphrase_for(entry, passphrase)
                if passphrase and archive.exists() and not self.pipeline.verify(archive, secret):
                    raise PasswordVerificationFailed(
                        f"Password does not match the existing archive of '{entry.path}'",
                        path=entry.path,
                        hash=entry.hash,
                    )

                if not force and self.pipeline.matches(entry.path, archive, secret):
                    logger.debug("%s unchanged", entry.path)
                    result.unchanged.append(entry.path)
                else:
                    logger.info("Encrypting %s...", entry.path)
                    self.pipeline.seal(entry.path, archive, secret)
                    tiering = self.tiering.apply(archive, self.storage_glob)
                    if tiering.warning:
                        result.warnings.append(tiering.warning)
                    to_stage.append(archive)
                    if tiering.attributes_changed:
                        to_stage.append(self.git.gitattributes_path)
                    result.processed.append(entry.path)

                if write and passphrase:
                    self._remember(entry, passphrase)
            except VaultError as e:
                logger.error("Failed to encrypt %s: %s", entry.path, e)
                result.failed.append((entry.path, str(e)))

        if stage and to_stage:
            self._stage(*dict.fromkeys(to_stage))
        return result

    def decrypt_all(
        self,
        raw_path: Optional[str | Path] = None,
        passphrase: Optional[str] = None,
        write: bool = False,
        base: Optional[str | Path] = None,
    ) -> BulkResult:
        """Restore every managed path (or one) from its archive."""
        result = BulkResult()

        for entry in self.select(raw_path, base):
            archive = self.archive_for(entry)
            if not archive.exists():
                message = f"Skipping {entry.path}: archive not found ({archive.name})"
                logger.warning(message)
                result.skipped.append(entry.path)
                result.warnings.append(message)
                continue

            try:
                secret = self._passphrase_for(entry, passphrase)
                logger.info("Decrypting %s...", entry.path)
                self.pipeline.unseal(entry.path, archive, secret)
                result.processed.append(entry.path)
                if write and passphrase:
                    self._remember(entry, passphrase)
            except VaultError as e:
                logger.warning("Failed to decrypt %s: %s", entry.path, e)
                result.failed.append((entry.path, str(e)))

        return result

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def secret_status(self, hash: str) -> Tuple[str, Optional[str]]:
        """Return (status, backend kind) of the secret record for ``hash``."""
        if self.layout.marker_file(hash).exists():
            return STATUS_OK, STORAGE_1PASSWORD
        if self.config.storage_mode == STORAGE_1PASSWORD:
            return STATUS_MISSING_MARKER, None
        if self.layout.secret_file(hash).exists():
            return STATUS_OK, STORAGE_FILE
        return STATUS_MISSING_SECRET, None

    def list_entries(self) -> List[EntryStatus]:
        statuses = []
        for entry in self.config.managed_paths:
            archive = self.archive_for(entry)
            size = file_size_mb(archive) if archive.exists() else 0.0
            secret, kind = self.secret_status(entry.hash)

            if not archive.exists():
                status = STATUS_MISSING_ARCHIVE
            elif secret != STATUS_OK:
                status = secret
            elif not os.path.lexists(self.layout.working_path(entry.path)):
                status = STATUS_MISSING_FILE
            else:
                status = STATUS_OK
            statuses.append(EntryStatus(entry.hash, entry.path, archive, size, status, kind))
        return statuses

    def find_orphans(self) -> List[OrphanRecord]:
        """Return secret artifacts whose hash has no manifest entry."""
        if not self.layout.vault_dir.is_dir():
            return []
        managed = {m.hash for m in self.config.managed_paths}
        orphans = []
        for path in sorted(self.layout.vault_dir.iterdir()):
            hash_ = self.layout.hash_from_secret_name(path.name)
            if hash_ is None or hash_ in managed:
                continue
            kind = STORAGE_1PASSWORD if path.name.endswith(MARKER_SUFFIX) else STORAGE_FILE
            orphans.append(OrphanRecord(hash_, path, kind))
        return orphans

    def clean_orphans(self) -> List[OrphanRecord]:
        """
        Soft-delete every orphaned record.

        Returns:
            the records that were cleaned; failures are logged and left
        """

        cleaned = []
        for orphan in self.find_orphans():
            try:
                self.backend(orphan.kind).mark_removed(orphan.hash)
            except VaultError as e:
                logger.warning("Could not clean %s: %s", orphan.path.name, e)
                continue
            cleaned.append(orphan)
        return cleaned

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def hook_installer(self) -> HookInstaller:
        return HookInstaller(self.git.hooks_dir(), self.root)

    def install_hooks(self) -> List[HookResult]:
        return self.hook_installer().install_all()

    def check_hooks(self) -> List[HookResult]:
        return self.hook_installer().check_all()


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def initialize_vault(
    git: GitRepo,
    storage_mode: str = DEFAULT_STORAGE_MODE,
    lfs_threshold_mb: float = DEFAULT_LFS_THRESHOLD_MB,
    cipher: str = DEFAULT_CIPHER,
    onepassword_vault: Optional[str] = None,
    force: bool = False,
    install_hooks: bool = True,
    cipher_impl: Optional[Cipher] = None,
    backends: Optional[Dict[str, SecretBackend]] = None,
    interactive: bool = False,
) -> Vault:
    """
    Create (or with ``force``, reconfigure) the vault of a repository.

    Managed paths survive a forced re-init; the cipher and storage mode
    cannot change while any path is managed.

    Raises:
        AlreadyInitialized: a config exists and ``force`` is not set
        ConfigError: an incompatible reconfiguration was requested
        BackendUnavailable, AuthRequired: the chosen cipher or backend is unusable
    """

    layout = VaultLayout(git.root)
    existing = VaultConfig.load(layout)
    if existing is not None and not force:
        raise AlreadyInitialized(
            f"Vault already initialized in {git.root} (use --force to reconfigure)"
        )

    managed = list(existing.managed_paths) if existing else []
    if managed and (existing.cipher != cipher or existing.storage_mode != storage_mode):
        raise ConfigError(
            "Cannot change cipher or storage mode while paths are managed "
            f"(current: {existing.cipher}/{existing.storage_mode})"
        )

    created = not layout.vault_dir.exists()
    try:
        layout.storage_dir.mkdir(parents=True, exist_ok=True)

        config = VaultConfig(
            storage_mode=storage_mode,
            lfs_threshold_mb=lfs_threshold_mb,
            cipher=cipher,
            onepassword_vault=onepassword_vault,
            managed_paths=managed,
        )
        vault = Vault(git, config, cipher=cipher_impl, backends=backends, interactive=interactive)
        if not vault.cipher.is_available():
            raise BackendUnavailable(f"Cipher '{cipher}' is not available on this system")

        backend = vault.backend(storage_mode)
        if isinstance(backend, OnePasswordBackend):
            backend.ensure_session()
            vaults = backend.list_vaults()
            if not vaults:
                raise ConfigError("No 1Password vaults found for the signed-in account")
            if backend.vault_name not in vaults:
                raise ConfigError(
                    f"1Password vault '{backend.vault_name}' not found "
                    f"(available: {', '.join(vaults)})"
                )

        with config_lock(layout):
            config.save(layout)
        git.add_ignore_rules(layout.secret_ignore_patterns)

        if install_hooks:
            vault.install_hooks()
        vault._stage(layout.config_path, git.gitignore_path)
    except BaseException:
        if created:
            shutil.rmtree(layout.vault_dir, ignore_errors=True)
        raise

    logger.info("Initialized vault in %s (storage: %s, cipher: %s)", git.root, storage_mode, cipher)
    return vault


def open_vault(
    workspace: Optional[str | Path] = None,
    auto_init: bool = False,
    cipher_impl: Optional[Cipher] = None,
    backends: Optional[Dict[str, SecretBackend]] = None,
    interactive: bool = False,
) -> Vault:
    """
    Open the vault of the repository containing ``workspace``.

    Raises:
        NotARepository: ``workspace`` is not in a git work tree
        ConfigError: the vault is not initialized (and ``auto_init`` is off)
    """

    git = GitRepo.discover(workspace)
    config = VaultConfig.load(VaultLayout(git.root))
    if config is not None:
        return Vault(git, config, cipher=cipher_impl, backends=backends, interactive=interactive)

    if not auto_init:
        raise ConfigError(f"Vault not initialized in {git.root}. Run 'gv init' first")
    logger.info("Vault not initialized. Initializing with defaults...")
    return initialize_vault(
        git,
        cipher=cipher_impl.name if cipher_impl else DEFAULT_CIPHER,
        cipher_impl=cipher_impl,
        backends=backends,
        interactive=interactive,
    )
