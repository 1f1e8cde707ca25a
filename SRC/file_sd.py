
"""File-based service discovery output, one JSON file per shard.
Each shard's scraper points its file_sd config at <out_dir>/<shard>.json.
Files are replaced atomically so a scraper never reads a half-written list.
"""
from __future__ import annotations

from typing import Dict, List, Mapping, Optional
import json
import logging
import os
import tempfile
from urllib.parse import quote

from assignment import Assignment
from target_registry import Target

log = logging.getLogger(__name__)

ADDRESS_LABEL = "__address__"
SHARD_LABEL = "__tmp_shard"


def target_group(target: Target, shard_id: str) -> Dict[str, object]:
    labels = {k: v for k, v in target.labels if k != ADDRESS_LABEL}
    labels[SHARD_LABEL] = shard_id
    return {"targets": [target.label(ADDRESS_LABEL) or target.id], "labels": labels}


def render(assignment: Assignment, targets: Mapping[str, Target],
           shards: Optional[List[str]] = None) -> Dict[str, List[Dict[str, object]]]:
    """Shard id -> list of target groups, sorted by target id.

    Shards listed in `shards` but owning nothing get an empty list.
    """
    out: Dict[str, List[Dict[str, object]]] = {s: [] for s in (shards or [])}
    for shard_id, tids in assignment.by_shard().items():
        groups = out.setdefault(shard_id, [])
        for tid in tids:
            target = targets.get(tid)
            if target is not None:
                groups.append(target_group(target, shard_id))
    return out


class FileSDWriter:
    def __init__(self, out_dir: str):
        self.out_dir = out_dir
        os.makedirs(out_dir, exist_ok=True)

    def path_for(self, shard_id: str) -> str:
        # percent-encoding keeps distinct shard ids in distinct files
        safe = quote(shard_id, safe="-._~")
        return os.path.join(self.out_dir, f"{safe}.json")

    def write_shard(self, shard_id: str, groups: List[Dict[str, object]]) -> str:
        path = self.path_for(shard_id)
        fd, tmp = tempfile.mkstemp(dir=self.out_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(groups, f, indent=2, sort_keys=True)
            os.replace(tmp, path)
        except BaseException:
            os.unlink(tmp)
            raise
        return path

    def read_shard(self, shard_id: str) -> Optional[List[Dict[str, object]]]:
        p = self.path_for(shard_id)
        if not os.path.exists(p):
            return None
        with open(p, "r", encoding="utf-8") as f:
            return json.load(f)

    def write(self, assignment: Assignment, targets: Mapping[str, Target],
              shards: Optional[List[str]] = None) -> Dict[str, str]:
        paths = {}
        for shard_id, groups in render(assignment, targets, shards).items():
            paths[shard_id] = self.write_shard(shard_id, groups)
        log.info("wrote file_sd for %d shards at version %d", len(paths), assignment.version)
        return paths
