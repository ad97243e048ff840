from __future__ import annotations
import json
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, FrozenSet, Tuple

from ..errors import ExportFailure
from ..ir.model_ir import Graph, SignatureDef
from ..ir.onnx_exporter import save_model_ir_as_onnx

logger = logging.getLogger(__name__)

GRAPH_FILE_NAME = "model.onnx"
METADATA_FILE_NAME = "saved_model.json"
ASSETS_DIR_NAME = "assets"
BUNDLE_FORMAT_VERSION = 1


@dataclass(frozen=True)
class ModelBundle:
    """The terminal export artifact: graph plus signatures, tags and assets."""
    graph: Graph
    signatures: Dict[str, SignatureDef]
    tags: FrozenSet[str]
    source_path: str = ""
    asset_paths: Tuple[str, ...] = field(default_factory=tuple)

    def metadata(self) -> Dict:
        return {
            "format_version": BUNDLE_FORMAT_VERSION,
            "tags": sorted(self.tags),
            "signatures": {k: s.to_dict() for k, s in sorted(self.signatures.items())},
        }


def collect_asset_paths(src_path: str) -> Tuple[str, ...]:
    """Lists asset files under <src_path>/assets, relative to that directory."""
    if not src_path:
        return ()
    assets_dir = Path(src_path) / ASSETS_DIR_NAME
    if not assets_dir.is_dir():
        return ()
    return tuple(sorted(str(p.relative_to(assets_dir)) for p in assets_dir.rglob("*") if p.is_file()))


class BundleWriter(ABC):
    @abstractmethod
    def write(self, bundle: ModelBundle, dst_path: str):
        """Persists `bundle` at `dst_path`. Either fully succeeds or leaves dst_path as it was."""


class DirectoryBundleWriter(BundleWriter):
    """Writes a bundle directory atomically: staged in a sibling temp dir, then moved in place."""

    def write(self, bundle: ModelBundle, dst_path: str):
        dst = Path(dst_path)
        parent = dst.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".{dst.name}.", dir=parent))
        except OSError as e:
            raise ExportFailure(f"Cannot prepare export destination {dst_path}: {e}") from e

        backup = None
        try:
            self._write_contents(bundle, staging)
            if dst.exists():
                backup = Path(tempfile.mkdtemp(prefix=f".{dst.name}.old.", dir=parent))
                os.rmdir(backup)
                os.replace(dst, backup)
            os.replace(staging, dst)
        except Exception as e:
            shutil.rmtree(staging, ignore_errors=True)
            if backup is not None and backup.exists() and not dst.exists():
                os.replace(backup, dst)
            raise ExportFailure(f"Failed to export model bundle to {dst_path}: {e}") from e

        if backup is not None:
            shutil.rmtree(backup, ignore_errors=True)
        logger.info(f"Exported model bundle to {dst}")

    @staticmethod
    def _write_contents(bundle: ModelBundle, staging: Path):
        graph = replace(bundle.graph, signatures=dict(bundle.signatures), tags=set(bundle.tags))
        save_model_ir_as_onnx(graph, str(staging / GRAPH_FILE_NAME))
        with open(staging / METADATA_FILE_NAME, "w") as f:
            json.dump(bundle.metadata(), f, indent=2)

        if bundle.asset_paths:
            src_assets = Path(bundle.source_path) / ASSETS_DIR_NAME
            dst_assets = staging / ASSETS_DIR_NAME
            for rel in bundle.asset_paths:
                target = dst_assets / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src_assets / rel, target)


def load_bundle_metadata(bundle_path: str) -> Dict:
    with open(Path(bundle_path) / METADATA_FILE_NAME, "r") as f:
        return json.load(f)
