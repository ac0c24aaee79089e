"""
Path policy shared by promotion and revert.

Decides which top-level entries of a root never travel between staging and
live, and which folder inside a unit of the per-unit directory holds
instance-local data. Promotion and revert must use the same policy so the
two operations stay inverses of each other modulo the excluded set.
"""

from dataclasses import dataclass

from .config import Config

# Entries that are specific to one instance and are never synchronized
DEFAULT_EXCLUDED = frozenset(
    {
        ".env",  # credentials / tokens per instance
        "SOUL.md",  # per-instance personality
        "IDENTITY.md",  # per-instance identity
        "memory",
        "logs",
        "data",  # runtime databases, locked while running
        "temp",
        "node_modules",
        "package-lock.json",
        ".venv",
        "venv",
        "__pycache__",
        "poetry.lock",
        "backups",
        "staging",
        ".restart-signal",
        ".upgrade-context",
        ".git",
    }
)

# Folder inside each unit that holds instance-local data
DEFAULT_PROTECTED = frozenset({"data"})


@dataclass(frozen=True)
class PathPolicy:
    """Exclusion rules for one staging/live pair."""

    excluded: frozenset = DEFAULT_EXCLUDED
    unit_dir: str = "skills"
    protected_subfolders: frozenset = DEFAULT_PROTECTED

    @classmethod
    def from_config(cls, cfg: Config) -> "PathPolicy":
        """Build the policy for a configured deployment.

        The backup archive, the staging root and the runtime files are
        excluded by their configured names as well as the defaults.
        """
        names = set(DEFAULT_EXCLUDED)
        live = cfg.live_root.resolve()
        for path in (cfg.backup_root, cfg.staging_root, cfg.signal_file, cfg.upgrade_context_file):
            resolved = path.resolve()
            if resolved.parent == live:
                names.add(resolved.name)
        if cfg.credentials_file:
            names.add(cfg.credentials_file)
        return cls(
            excluded=frozenset(names),
            unit_dir=cfg.unit_dir,
            protected_subfolders=frozenset({cfg.protected_subfolder}),
        )

    def is_excluded(self, name: str) -> bool:
        return name in self.excluded

    def is_unit_dir(self, name: str) -> bool:
        return bool(self.unit_dir) and name == self.unit_dir

    def is_protected_subfolder(self, name: str) -> bool:
        return name in self.protected_subfolders

    def to_dict(self) -> dict:
        return {
            "excluded": sorted(self.excluded),
            "unit_dir": self.unit_dir,
            "protected_subfolders": sorted(self.protected_subfolders),
        }
