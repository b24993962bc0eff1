"""Operation orchestrator: resolve the environment, dispatch to an engine, aggregate.

Every call to :meth:`Orchestrator.run` re-resolves the inventory and builds
fresh providers, so no state survives between runs. Operation-level
precondition failures (missing confirmation, invalid artifact, unknown
environment) are raised to the caller before any side effect; per-node
failures are reported inside the returned :class:`OperationResult`.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .backups import BackupStore
from .config import AppConfig
from .engines import BackupEngine, ConvergenceEngine, EngineContext, RestoreEngine
from .errors import CancelledError, PreconditionFailedError
from .executor import NodeExecutor, RetryPolicy
from .inventory import InventoryResolver, YamlInventorySource
from .locking import LockManager
from .models import (
    DeployOptions,
    Environment,
    OperationKind,
    OperationRequest,
    OperationResult,
    RestoreOptions,
)
from .providers import (
    ContainerRuntime,
    DatabaseClient,
    DockerRuntime,
    HostFiles,
    MongoShellClient,
    SecretsResolver,
    ShellHostFiles,
)
from .status import StatusEngine
from .templates import TemplateEngine
from .transport import RemoteExec, SshTransport
from .workers import CancelToken

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ProviderSet:
    """The remote collaborators one run talks to."""

    container: ContainerRuntime
    database: DatabaseClient
    host: HostFiles


ProviderFactory = Callable[[bool], ProviderSet]


def ssh_provider_factory(
    config: AppConfig,
    *,
    transport: RemoteExec | None = None,
    secrets: SecretsResolver | None = None,
) -> ProviderFactory:
    """Return a factory building SSH-backed providers (dry-run aware)."""
    remote = transport or SshTransport(config.ssh)
    resolver = secrets or SecretsResolver()
    retry = RetryPolicy.from_config(config.executor)

    def build(dry_run: bool) -> ProviderSet:
        executor = NodeExecutor(
            remote,
            retry=retry,
            timeout=config.executor.timeout,
            dry_run=dry_run,
        )
        return ProviderSet(
            container=DockerRuntime(executor, config.container, port=config.database.port),
            database=MongoShellClient(executor, config.database, config.container, resolver),
            host=ShellHostFiles(executor),
        )

    return build


class Orchestrator:
    """Root component turning an :class:`OperationRequest` into an :class:`OperationResult`."""

    def __init__(
        self,
        config: AppConfig,
        *,
        resolver: InventoryResolver,
        providers: ProviderFactory,
        store: BackupStore,
        locks: LockManager,
        templates: TemplateEngine,
    ) -> None:
        """Wire the orchestrator to its collaborators."""
        self.config = config
        self.resolver = resolver
        self.providers = providers
        self.store = store
        self.locks = locks
        self.templates = templates

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        transport: RemoteExec | None = None,
        secrets: SecretsResolver | None = None,
    ) -> Orchestrator:
        """Build an orchestrator with the default SSH-backed providers."""
        return cls(
            config,
            resolver=InventoryResolver(
                YamlInventorySource(config.inventory_dir),
                default_retention_days=config.backups.retention_days,
            ),
            providers=ssh_provider_factory(config, transport=transport, secrets=secrets),
            store=BackupStore(config.backups.root),
            locks=LockManager(config.runtime_dir, config.lock_timeout),
            templates=TemplateEngine.with_overrides(config.templates_dir),
        )

    def resolve(self, environment: str) -> Environment:
        """Resolve *environment* afresh from the inventory."""
        return self.resolver.resolve(environment)

    def context(self, *, dry_run: bool = False, cancel: CancelToken | None = None) -> EngineContext:
        """Build the engine context for one run."""
        providers = self.providers(dry_run)
        return EngineContext(
            config=self.config,
            container=providers.container,
            database=providers.database,
            host=providers.host,
            store=self.store,
            locks=self.locks,
            templates=self.templates,
            cancel=cancel or CancelToken(),
        )

    def run(self, request: OperationRequest, cancel: CancelToken | None = None) -> OperationResult:
        """Execute *request* and return the aggregated result."""
        if cancel is not None and cancel.cancelled:
            raise CancelledError("Operation cancelled before dispatch.")
        environment = self.resolve(request.environment)
        kind = request.kind
        logger.info("%s on %s (%d nodes)", kind.value, environment.name, len(environment.nodes))

        if kind is OperationKind.DEPLOY:
            options = request.options if isinstance(request.options, DeployOptions) else DeployOptions()
            context = self.context(dry_run=options.dry_run, cancel=cancel)
            return ConvergenceEngine(context).converge(environment, dry_run=options.dry_run)

        if kind is OperationKind.BACKUP:
            return BackupEngine(self.context(cancel=cancel)).backup(environment)

        if kind is OperationKind.RESTORE:
            if not isinstance(request.options, RestoreOptions):
                raise PreconditionFailedError("Restore requires a backup artifact reference.")
            return RestoreEngine(self.context(cancel=cancel)).restore(environment, request.options)

        # Status is read-only; a dry-run executor refuses any mutating unit.
        return StatusEngine(self.context(dry_run=True, cancel=cancel)).report(environment)


__all__ = ["Orchestrator", "ProviderFactory", "ProviderSet", "ssh_provider_factory"]
