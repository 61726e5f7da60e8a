"""Registry of known restic repositories."""

from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field
from ruamel.yaml import YAML

from .backup.metadata import MetadataStore
from .errors import RepositoryError, ResticDroidError
from .restic.executor import ResticExecutor
from .restic.models import BACKUP_TAGS
from .restic.repository import ResticRepository
from .util.logging import get_logger

logger = get_logger(__name__)


class LocalRepository(BaseModel):
    """A registered repository. Passwords are never stored here."""

    path: str = Field(description="Repository location as passed to restic -r")
    id: str = Field(description="Repository ID from restic cat config")
    name: str = Field(default="", description="Display name")

    @property
    def display_name(self) -> str:
        return self.name or Path(self.path).name or self.path


class RegistryState(BaseModel):
    repositories: List[LocalRepository] = Field(default_factory=list)
    selected: Optional[str] = Field(default=None, description="Path of the selected repository")


class RepositoryRegistry:
    """YAML-backed list of repositories plus the current selection."""

    def __init__(
        self,
        registry_file: Path,
        executor: ResticExecutor,
        metadata: MetadataStore,
        backup_tags: Sequence[str] = BACKUP_TAGS,
    ):
        self.registry_file = registry_file
        self.executor = executor
        self.metadata = metadata
        self.backup_tags = tuple(backup_tags)
        self.state = self._load()

    def _load(self) -> RegistryState:
        if not self.registry_file.exists():
            return RegistryState()

        yaml = YAML(typ="safe")
        with open(self.registry_file, "r") as f:
            data = yaml.load(f) or {}
        return RegistryState(**data)

    def _save(self) -> None:
        self.registry_file.parent.mkdir(parents=True, exist_ok=True)

        yaml = YAML()
        yaml.default_flow_style = False

        with open(self.registry_file, "w") as f:
            yaml.dump(self.state.model_dump(mode="json"), f)

    @property
    def repositories(self) -> List[LocalRepository]:
        return sorted(self.state.repositories, key=lambda r: r.display_name.lower())

    def get(self, path: str) -> Optional[LocalRepository]:
        for repository in self.state.repositories:
            if repository.path == path:
                return repository
        return None

    def selected(self) -> Optional[LocalRepository]:
        return self.get(self.state.selected) if self.state.selected else None

    def select(self, path: str) -> LocalRepository:
        repository = self.get(path)
        if repository is None:
            raise RepositoryError(f"Unknown repository: {path}")
        self.state.selected = path
        self._save()
        return repository

    def open(self, repository: LocalRepository, password: str) -> ResticRepository:
        return ResticRepository(
            self.executor, repository.path, password, repo_id=repository.id, backup_tags=self.backup_tags
        )

    def add(self, path: str, password: str, name: str = "") -> LocalRepository:
        """Register a repository, initializing it when it does not exist yet.

        An existing repository must accept ``password``. Metadata mirrored into
        the repository is recovered before the entry is saved.

        Raises:
            RepositoryError: If the path is already registered, or init/verification fails
        """
        if self.get(path) is not None:
            raise RepositoryError("Repository already exists.")

        self.executor.ensure_ready()
        restic = ResticRepository(self.executor, path, password, backup_tags=self.backup_tags)

        try:
            if restic.exists():
                config = restic.config()
            else:
                if path.startswith("/"):
                    self.executor.shell.mkdirs(path)
                restic.init()
                config = restic.config()
        except ResticDroidError as e:
            raise RepositoryError(f"Could not open repository at {path}: {e}") from e

        recovered = self.metadata.bootstrap(restic, config.id)
        if recovered:
            logger.info(f"Recovered metadata for {recovered} snapshots from {path}")

        repository = LocalRepository(path=path, id=config.id, name=name)
        self.state.repositories.append(repository)
        if self.state.selected is None:
            self.state.selected = path
        self._save()

        logger.info(f"Added repository {repository.display_name} ({config.id[:8]})")
        return repository

    def remove(self, path: str) -> None:
        repository = self.get(path)
        if repository is None:
            raise RepositoryError(f"Unknown repository: {path}")

        self.state.repositories.remove(repository)
        if self.state.selected == path:
            self.state.selected = None
        self._save()
        logger.info(f"Removed repository {repository.display_name}")
