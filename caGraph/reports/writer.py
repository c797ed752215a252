"""
Output files for collection runs: the graph document, the full collection,
a flat relationships CSV and periodic checkpoints
"""

# Standard library imports
import csv
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

# Third-party imports
import jwt

# Local imports
from ..analyzer.models import Relationship, ResolvedPolicy


GRAPH_FILENAME = 'conditional_access_graph.json'
COLLECTION_FILENAME = 'conditional_access_policies.json'
RELATIONSHIPS_FILENAME = 'relationships.csv'
CHECKPOINT_FILENAME = 'checkpoint.json'

# Entity type -> collection file section
ENTITY_SECTIONS = {
    'user': 'users',
    'group': 'groups',
    'role': 'roles',
    'servicePrincipal': 'servicePrincipals',
    'namedLocation': 'namedLocations',
    'device': 'devices',
    'organization': 'organizations',
}

CSV_COLUMNS = ['policyId', 'policyName', 'scope', 'targetType', 'targetId', 'targetDisplayName', 'via', 'description']


def decode_token_metadata(token: str) -> Dict[str, Any]:
    """Read tenant, account and scopes from an access token without verifying it.

    Parameters:
        token (str): Microsoft Graph access token (JWT)

    Returns:
        Dict: {'tenantId', 'account', 'scopes'}; values are None/[] if the token
              can't be decoded or lacks the claims
    """
    metadata = {'tenantId': None, 'account': None, 'scopes': []}
    if not token:
        return metadata

    try:
        decoded = jwt.decode(token, options={"verify_signature": False})
    except jwt.exceptions.DecodeError:
        return metadata

    metadata['tenantId'] = decoded.get('tid')
    metadata['account'] = decoded.get('upn') or decoded.get('unique_name') or decoded.get('app_displayname') or decoded.get('appid')
    # Delegated tokens carry 'scp' (space separated), application tokens carry 'roles'
    scopes = decoded.get('scp')
    metadata['scopes'] = scopes.split() if isinstance(scopes, str) else list(decoded.get('roles') or [])
    return metadata


def group_entities(records: Iterable[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Group registry records by entity type for the collection file."""
    grouped = {section: [] for section in ENTITY_SECTIONS.values()}
    grouped['other'] = []
    for record in records:
        grouped[ENTITY_SECTIONS.get(record.get('type'), 'other')].append(record)
    return grouped


def _human_size(size_bytes: float) -> str:
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.2f} PB"


class ReportWriter:
    """Writes collection outputs to a directory"""

    def __init__(self, output_dir: str = 'output', progress_callback=None):
        """Initialize the writer.

        Parameters:
            output_dir (str): Directory receiving every output file (created if missing)
            progress_callback (callable, optional): Callback function(percent, message) for progress updates
        """
        self.output_dir = Path(output_dir)
        self.progress_callback = progress_callback

    def _report(self, percent, message: str):
        if self.progress_callback:
            self.progress_callback(percent, message)
        else:
            print(message)

    def write_json(self, data: Dict[str, Any], filename: str, percent: int = None) -> str:
        """Serialize ``data`` to ``output_dir/filename``.

        Returns:
            str: Path of the written file
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / filename

        json_str = json.dumps(data, indent=2, ensure_ascii=False)
        self._report(percent, f"Writing {filename} ({_human_size(len(json_str.encode('utf-8')))})...")

        with open(path, 'w', encoding='utf-8') as f:
            f.write(json_str)
        return str(path)

    def write_graph(self, document: Dict[str, Any]) -> str:
        """Write the graph document consumed by the visualization front-end."""
        return self.write_json(document, GRAPH_FILENAME, percent=95)

    def write_collection(self, policies: Iterable[ResolvedPolicy], entity_registry: Dict[str, Dict[str, Any]],
                         relationships: Iterable[Relationship], metadata: Dict[str, Any],
                         anomalies: List[Dict[str, Any]] = None) -> str:
        """Write every collected fact so the graph can be rebuilt offline.

        Parameters:
            policies (Iterable[ResolvedPolicy]): Resolved policies
            entity_registry (Dict): Registry records keyed by id
            relationships (Iterable[Relationship]): Deduplicated relationships
            metadata (Dict): Run metadata
            anomalies (List[Dict]): Anomalies recorded during the run (optional)

        Returns:
            str: Path of the written file
        """
        data = {
            'generatedAt': datetime.now(timezone.utc).isoformat(),
            'metadata': metadata,
            'policies': [p.to_dict() for p in policies],
            'entities': group_entities(entity_registry.values()),
            'relationships': [r.to_dict() for r in relationships],
        }
        if anomalies is not None:
            data['anomalies'] = anomalies
        return self.write_json(data, COLLECTION_FILENAME, percent=90)

    def write_relationships_csv(self, relationships: Iterable[Relationship]) -> str:
        """Write one row per relationship; the via path is joined with ' > '."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / RELATIONSHIPS_FILENAME

        with open(path, 'w', encoding='utf-8', newline='') as f:
            writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS)
            writer.writeheader()
            for relationship in relationships:
                row = relationship.to_dict()
                row['via'] = ' > '.join(row['via'] or [])
                writer.writerow(row)

        self._report(97, f"✓ Relationships written to {path}")
        return str(path)

    def write_checkpoint(self, snapshot: Dict[str, Any], processed: int, total: int) -> str:
        """Overwrite the checkpoint file with the partial state of a run.

        The checkpoint is advisory: it is rewritten in place and never read back
        by the collector.
        """
        data = {
            'generatedAt': datetime.now(timezone.utc).isoformat(),
            'processedPolicies': processed,
            'totalPolicies': total,
        }
        data.update(snapshot)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / CHECKPOINT_FILENAME
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        return str(path)

    @staticmethod
    def load_collection(file_path: str) -> Tuple[List[ResolvedPolicy], Dict[str, Dict[str, Any]], List[Relationship], Dict[str, Any]]:
        """Load a collection file written by ``write_collection``.

        Returns:
            Tuple: (policies, entity registry keyed by id, relationships, metadata)

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the file isn't a collection document
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"Collection file not found: {file_path}")

        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        if not isinstance(data, dict) or 'policies' not in data:
            raise ValueError("Collection file must contain a JSON object with a 'policies' list")

        registry = {}
        for records in (data.get('entities') or {}).values():
            for record in records:
                if record.get('id') and record['id'] not in registry:
                    registry[record['id']] = record

        try:
            policies = [ResolvedPolicy.from_dict(p) for p in data['policies']]
            relationships = [Relationship.from_dict(r) for r in data.get('relationships') or []]
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed collection file: {e}")

        return policies, registry, relationships, data.get('metadata') or {}
