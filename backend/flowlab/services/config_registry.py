"""
Registry of compiled flow graphs for local-mode runs

Graphs are registered directly or looked up in a directory holding
canonical `<experiment_id>.json` artifacts (or `<experiment_id>.yaml`
sources, compiled on load).
"""
from pathlib import Path
from typing import Dict, Optional, Union
import logging
import re

from flowlab.models.flow import CompiledGraph
from flowlab.services.config_compiler import compile_file

logger = logging.getLogger(__name__)

EXPERIMENT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")

SOURCE_SUFFIXES = (".json", ".yaml", ".yml")


def is_valid_experiment_id(experiment_id: str) -> bool:
    return bool(experiment_id) and bool(EXPERIMENT_ID_RE.match(experiment_id)) and ".." not in experiment_id


class ConfigRegistry:
    """Experiment id -> CompiledGraph"""

    def __init__(self, configs_dir: Optional[Union[str, Path]] = None):
        self.configs_dir = Path(configs_dir).resolve() if configs_dir else None
        self._graphs: Dict[str, CompiledGraph] = {}

    def register(self, experiment_id: str, graph: CompiledGraph) -> None:
        if not is_valid_experiment_id(experiment_id):
            raise ValueError(f"Invalid experiment id: {experiment_id!r}")
        self._graphs[experiment_id] = graph

    def get(self, experiment_id: str) -> Optional[CompiledGraph]:
        """Registered graph for the experiment, loading it from disk on first use"""
        graph = self._graphs.get(experiment_id)
        if graph is not None:
            return graph

        path = self._find_source(experiment_id)
        if path is None:
            return None

        graph = self._load(path)
        self._graphs[experiment_id] = graph
        logger.info(f"Loaded local config '{experiment_id}' from {path.name}")
        return graph

    def __contains__(self, experiment_id: str) -> bool:
        return self.get(experiment_id) is not None

    def load_dir(self) -> int:
        """Eagerly load every config in the directory. Returns the number loaded."""
        if self.configs_dir is None or not self.configs_dir.is_dir():
            return 0

        loaded = 0
        for path in sorted(self.configs_dir.iterdir()):
            if path.suffix not in SOURCE_SUFFIXES or not is_valid_experiment_id(path.stem):
                continue
            if path.stem in self._graphs:
                continue
            self._graphs[path.stem] = self._load(path)
            loaded += 1

        logger.info(f"Loaded {loaded} local configs from {self.configs_dir}")
        return loaded

    def _find_source(self, experiment_id: str) -> Optional[Path]:
        if self.configs_dir is None or not is_valid_experiment_id(experiment_id):
            return None

        for suffix in SOURCE_SUFFIXES:
            path = (self.configs_dir / f"{experiment_id}{suffix}").resolve()
            # Resolved path must stay inside the configs directory
            if path.parent != self.configs_dir:
                logger.warning(f"Rejected config path outside {self.configs_dir}: {experiment_id!r}")
                return None
            if path.is_file():
                return path
        return None

    @staticmethod
    def _load(path: Path) -> CompiledGraph:
        if path.suffix == ".json":
            return CompiledGraph.from_canonical_json(path.read_bytes())
        return compile_file(path)
