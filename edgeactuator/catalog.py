# Endpoint catalog built from a Greengrass discovery payload.
import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Tuple

from .errors import MalformedDiscoveryData

LOG = logging.getLogger(__name__)

DISCOVERY_OUTPUT_NAME = "discovery_output.json"


@dataclass(frozen=True)
class ConnectivityCandidate:
    id: str
    group_name: str
    host_address: str
    port: int
    ggc_name: str
    metadata: str = ""


def anchor_path(output_dir: str, group: str, index: int) -> str:
    # index is 1-based: <group>_root_ca1.pem, <group>_root_ca2.pem, ...
    return os.path.join(output_dir, f"{group}_root_ca{index}.pem")


def _require(obj, key, where):
    if not isinstance(obj, dict) or key not in obj:
        raise MalformedDiscoveryData(f"{where}: missing {key!r}")
    return obj[key]


class EndpointCatalog:
    """Candidates in connection order plus the trust anchors of every group."""

    def __init__(self, candidates: List[ConnectivityCandidate], anchors: Dict[str, Tuple[str, ...]]):
        # sorted() is stable, so duplicate ids keep discovery-return order
        self.candidates: Tuple[ConnectivityCandidate, ...] = tuple(sorted(candidates, key=lambda c: c.id))
        self.anchors: Dict[str, Tuple[str, ...]] = dict(anchors)

    @classmethod
    def build_from(cls, raw) -> "EndpointCatalog":
        if not isinstance(raw, dict):
            raise MalformedDiscoveryData("discovery result is not a JSON object")
        groups = _require(raw, "GGGroups", "discovery result")
        if not isinstance(groups, list):
            raise MalformedDiscoveryData("GGGroups is not a list")
        candidates, anchors = [], {}
        for g in groups:
            group_id = _require(g, "GGGroupId", "group")
            cas = g.get("CAs", [])
            if not isinstance(cas, list) or not all(isinstance(c, str) for c in cas):
                raise MalformedDiscoveryData(f"group {group_id}: CAs must be a list of PEM strings")
            anchors[group_id] = tuple(anchors.get(group_id, ()) + tuple(cas))
            for core in g.get("Cores", []):
                ggc_name = _require(core, "thingArn", f"group {group_id} core")
                for conn in core.get("Connectivity", []):
                    where = f"group {group_id} core {ggc_name}"
                    port = _require(conn, "PortNumber", where)
                    try:
                        port = int(port)
                    except (TypeError, ValueError) as e:
                        raise MalformedDiscoveryData(f"{where}: bad port {port!r}") from e
                    candidates.append(ConnectivityCandidate(
                        id=str(_require(conn, "Id", where)),
                        group_name=group_id,
                        host_address=str(_require(conn, "HostAddress", where)),
                        port=port,
                        ggc_name=ggc_name,
                        metadata=str(conn.get("Metadata") or ""),
                    ))
        return cls(candidates, anchors)

    def anchors_for(self, group: str) -> Tuple[str, ...]:
        return self.anchors.get(group, ())

    def write_trust_anchors(self, output_dir: str) -> Dict[str, List[str]]:
        """Write every anchor to its stable path, truncating old runs' files."""
        os.makedirs(output_dir, exist_ok=True)
        written = {}
        for group, pems in self.anchors.items():
            paths = []
            for index, pem in enumerate(pems, start=1):
                path = anchor_path(output_dir, group, index)
                with open(path, "w", encoding="utf-8") as f:
                    f.write(pem)
                paths.append(path)
            written[group] = paths
            LOG.debug("wrote %d trust anchors for group %s", len(paths), group)
        return written

    def __len__(self):
        return len(self.candidates)

    def __iter__(self):
        return iter(self.candidates)


def save_discovery_document(raw, path: str):
    # overwrite-if-exists
    with open(path, "w", encoding="utf-8") as f:
        json.dump(raw, f, indent=2)
    LOG.info("discovery result written to %s", path)
