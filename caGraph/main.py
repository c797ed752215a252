"""
Main CLI entry point for CA Graph
"""

import argparse
import json
import sys
import time
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .analyzer.assignment_resolver import PolicyAssignmentResolver
from .analyzer.models import ResolvedPolicy
from .analyzer.session import CollectionSession
from .collection_config import CollectionConfig
from .errors import TRANSIENT_LOOKUP_FAILURE, FatalConfigurationError
from .graph.api_client import GraphAPIClient
from .reports.graph_builder import GraphBuilder
from .reports.writer import ReportWriter, decode_token_metadata


def _progress(progress_callback, percent, message: str):
    if progress_callback:
        progress_callback(percent, message)


def load_auth_context_names(api_client: GraphAPIClient, session: CollectionSession) -> Dict[str, str]:
    """Map authentication context ids (c1, c2, ...) to their display names.

    A failed lookup is recorded on the session; nodes then fall back to the raw id.
    """
    result = api_client.get_authentication_contexts()
    if not result.ok:
        session.record_anomaly(TRANSIENT_LOOKUP_FAILURE, 'authenticationContextClassReferences',
                               f"Failed to fetch authentication contexts: {result.error or result.status}")
        return {}
    return {c['id']: c.get('displayName') or c['id'] for c in result.value or [] if c.get('id')}


def collect_graph(api_client: GraphAPIClient, config: CollectionConfig, session: CollectionSession = None,
                  writer: ReportWriter = None, progress_callback=None) -> Dict[str, Any]:
    """Fetch and resolve every policy of the tenant.

    Policies are resolved one at a time; every ``config.checkpoint_every``
    policies the partial state is written to the checkpoint file (when a
    writer is given).

    Parameters:
        api_client (GraphAPIClient): Directory client
        config (CollectionConfig): Run settings
        session (CollectionSession): Run state (a fresh one is created if omitted)
        writer (ReportWriter): Output writer used for checkpoints (optional)
        progress_callback: Optional callback function(percent, message) for progress updates

    Returns:
        Dict with:
            - policies: list of ResolvedPolicy
            - session: the CollectionSession holding registry, relationships and anomalies
            - auth_context_names: authentication context id -> display name
            - fetched_count: number of policies returned by the tenant
            - skipped_disabled: number of disabled policies left out

    Raises:
        FatalConfigurationError: If the policy list can't be fetched
    """
    session = session or CollectionSession(max_depth=config.max_depth)

    raw_policies = api_client.get_all_policies()
    fetched_count = len(raw_policies)
    _progress(progress_callback, 10, f"✓ Fetched {fetched_count} policies")

    if not config.include_disabled:
        raw_policies = [p for p in raw_policies if p.get('state') != 'disabled']
    skipped_disabled = fetched_count - len(raw_policies)
    if skipped_disabled:
        _progress(progress_callback, 11, f"  Skipping {skipped_disabled} disabled policies")

    resolver = PolicyAssignmentResolver(api_client, session,
                                        expand_groups=config.expand_groups,
                                        expand_roles=config.expand_roles)

    resolved: List[ResolvedPolicy] = []
    total = len(raw_policies)
    for index, policy in enumerate(raw_policies, 1):
        resolved_policy = resolver.resolve_policy(policy)
        if resolved_policy is not None:
            resolved.append(resolved_policy)

        _progress(progress_callback, 10 + int(70 * index / total),
                  f"Resolved {index}/{total}: {policy.get('displayName', 'Unknown Policy')}")

        if writer and index % config.checkpoint_every == 0 and index < total:
            checkpoint = writer.write_checkpoint(session.snapshot(), index, total)
            _progress(progress_callback, None, f"  Checkpoint written to {checkpoint}")

    auth_context_names = load_auth_context_names(api_client, session)
    _progress(progress_callback, 82, f"✓ Resolved {len(resolved)} policies, {len(session.relationships)} relationships")

    return {
        'policies': resolved,
        'session': session,
        'auth_context_names': auth_context_names,
        'fetched_count': fetched_count,
        'skipped_disabled': skipped_disabled,
    }


def build_metadata(token_metadata: Dict[str, Any], policies: List[ResolvedPolicy], session: CollectionSession,
                   auth_context_names: Dict[str, str] = None) -> Dict[str, Any]:
    """Assemble the metadata block shared by the graph and collection files."""
    return {
        'account': token_metadata.get('account'),
        'tenantId': token_metadata.get('tenantId'),
        'scopes': token_metadata.get('scopes') or [],
        'policyCount': len(policies),
        'entityCount': len(session.registry),
        'relationshipCount': len(session.relationships),
        'anomalyCount': len(session.anomalies),
        'anomalies': session.anomaly_counts(),
        'authenticationContexts': auth_context_names or {},
    }


def _empty_run_warning(collected: Dict[str, Any]) -> Optional[str]:
    if collected['policies']:
        return None
    if collected['fetched_count'] == 0:
        return "The tenant returned no Conditional Access policies"
    if collected['skipped_disabled'] == collected['fetched_count']:
        return f"All {collected['fetched_count']} policies are disabled and disabled policies were excluded"
    return "No policy could be resolved; see the recorded anomalies"


def run_collection(token: str, config=None, progress_callback=None, verbose: bool = True) -> Dict:
    """Run a full collection: fetch, resolve, build the graph and write outputs.

    This function can be called programmatically from the web interface or CLI.

    Args:
        token: MS Graph access token
        config: CollectionConfig instance or dict of CollectionConfig keys (optional)
        progress_callback: Optional callback function(percent, message) for progress updates
        verbose: Print a warning line for every recorded anomaly

    Returns:
        Dictionary with:
            - success: bool
            - graph_path: path to the graph JSON
            - collection_path: path to the collection JSON
            - csv_path: path to the relationships CSV (None if disabled)
            - policy_count, node_count, edge_count, relationship_count, anomaly_count
            - anomalies: anomaly counts by kind
            - warning: set when no policy was resolved
            - error: error message if success=False
    """
    try:
        # === INIT ===
        start_time = time.time()

        if not isinstance(config, CollectionConfig):
            config = CollectionConfig(config)
        is_valid, errors = config.validate()
        if not is_valid:
            return {'success': False, 'error': f"Invalid configuration: {'; '.join(errors)}"}

        api_client = GraphAPIClient(token, proxy=config.proxy)

        # Validate token
        is_valid, error_msg = api_client.validate_token()
        if is_valid:
            _progress(progress_callback, 5, "✓ Access token is valid")
        else:
            return {'success': False, 'error': f"Invalid token: {error_msg}"}

        token_metadata = decode_token_metadata(token)
        if not token_metadata['tenantId']:
            organization = api_client.get_organization()
            if organization.ok:
                token_metadata['tenantId'] = organization.value.get('id')

        # === COLLECT ===
        session = CollectionSession(max_depth=config.max_depth, verbose=verbose)
        writer = ReportWriter(config.output_dir, progress_callback=progress_callback)
        collected = collect_graph(api_client, config, session=session, writer=writer,
                                  progress_callback=progress_callback)
        policies = collected['policies']

        # === BUILD ===
        metadata = build_metadata(token_metadata, policies, session, collected['auth_context_names'])
        builder = GraphBuilder(auth_context_names=collected['auth_context_names'])
        document = builder.build_document(policies, session.registry, session.relationships, metadata)
        _progress(progress_callback, 85, f"✓ Built graph: {len(document['nodes'])} nodes, {len(document['edges'])} edges")

        # === WRITE ===
        collection_path = writer.write_collection(policies, session.registry, session.relationships, metadata,
                                                  anomalies=[a.to_dict() for a in session.anomalies])
        graph_path = writer.write_graph(document)
        csv_path = writer.write_relationships_csv(session.relationships) if config.write_csv else None

        _progress(progress_callback, 100, "✓ Collection complete!")

        result = {
            'success': True,
            'graph_path': graph_path,
            'collection_path': collection_path,
            'csv_path': csv_path,
            'policy_count': len(policies),
            'node_count': len(document['nodes']),
            'edge_count': len(document['edges']),
            'relationship_count': len(session.relationships),
            'anomaly_count': len(session.anomalies),
            'anomalies': session.anomaly_counts(),
            'runtime': time.time() - start_time,
        }
        warning = _empty_run_warning(collected)
        if warning:
            result['warning'] = warning
        return result

    except FatalConfigurationError as e:
        return {'success': False, 'error': str(e)}
    except Exception as e:
        error_msg = f"{str(e)}\n{traceback.format_exc()}"
        return {
            'success': False,
            'error': error_msg
        }


def export_graph(input_path: str, output_dir: str = None, progress_callback=None) -> Dict:
    """Rebuild the graph file from a previous collection, without directory access.

    Args:
        input_path: Path to a conditional_access_policies.json file
        output_dir: Directory for the graph file (default: the input file's directory)
        progress_callback: Optional callback function(percent, message) for progress updates

    Returns:
        Dictionary with success, graph_path, node_count, edge_count (or error)
    """
    try:
        policies, registry, relationships, metadata = ReportWriter.load_collection(input_path)
    except FileNotFoundError as e:
        return {'success': False, 'error': str(e)}
    except (json.JSONDecodeError, ValueError) as e:
        return {'success': False, 'error': f"Invalid collection file: {e}"}

    _progress(progress_callback, 20, f"✓ Loaded {len(policies)} policies, {len(relationships)} relationships")

    if output_dir is None:
        output_dir = str(Path(input_path).parent)

    builder = GraphBuilder(auth_context_names=metadata.get('authenticationContexts') or {})
    document = builder.build_document(policies, registry, relationships, metadata)
    _progress(progress_callback, 80, f"✓ Built graph: {len(document['nodes'])} nodes, {len(document['edges'])} edges")

    graph_path = ReportWriter(output_dir, progress_callback=progress_callback).write_graph(document)
    _progress(progress_callback, 100, "✓ Export complete!")

    return {
        'success': True,
        'graph_path': graph_path,
        'node_count': len(document['nodes']),
        'edge_count': len(document['edges']),
    }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ca-graph',
        description='Collect Conditional Access policy assignments into a relationship graph',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Collect policies, resolve assignments and write the graph
  python -m caGraph collect --token YOUR_TOKEN

  # Limit group nesting depth and skip disabled policies
  python -m caGraph collect --token YOUR_TOKEN --max-depth 5 --exclude-disabled

  # Route requests through a debugging proxy (e.g. Burp Suite)
  python -m caGraph collect --token YOUR_TOKEN --proxy 127.0.0.1:8080

  # Rebuild the graph from a previous collection (no token needed)
  python -m caGraph export --input output/conditional_access_policies.json
        """
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    collect = subparsers.add_parser('collect', help='Collect policies and build the graph')
    collect.add_argument('--token', required=True, help='Microsoft Graph access token (required)')
    collect.add_argument('--config', help='Path to JSON file with collection settings')
    collect.add_argument('--output-dir', help='Output directory (default: output)')
    collect.add_argument('--max-depth', type=int, help='Maximum group nesting depth (default: 10)')
    collect.add_argument('--checkpoint-every', type=int, metavar='N',
                         help='Write a checkpoint every N policies (default: 25)')
    collect.add_argument('--no-expand-groups', action='store_true', help="Don't expand group members")
    collect.add_argument('--no-expand-roles', action='store_true', help="Don't expand role members")
    collect.add_argument('--exclude-disabled', action='store_true', help='Skip disabled policies')
    collect.add_argument('--no-csv', action='store_true', help="Don't write relationships.csv")
    collect.add_argument('--proxy', metavar='HOST:PORT',
                         help='Route requests through a proxy without certificate verification')
    collect.add_argument('--quiet', action='store_true', help="Don't print a line for every lookup warning")

    export = subparsers.add_parser('export', help='Rebuild the graph file from a collection file')
    export.add_argument('--input', required=True, help='Path to conditional_access_policies.json')
    export.add_argument('--output-dir', help='Output directory (default: directory of the input file)')

    return parser


def _config_from_args(args) -> CollectionConfig:
    config = CollectionConfig.from_file(args.config) if args.config else CollectionConfig()
    return config.merge({
        'output_dir': args.output_dir,
        'max_depth': args.max_depth,
        'checkpoint_every': args.checkpoint_every,
        'expand_groups': False if args.no_expand_groups else None,
        'expand_roles': False if args.no_expand_roles else None,
        'include_disabled': False if args.exclude_disabled else None,
        'write_csv': False if args.no_csv else None,
        'proxy': args.proxy,
    })


def main(argv: List[str] = None):
    """CLI entry point for CA Graph."""
    start_timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    args = _build_parser().parse_args(argv)

    # Define progress callback to print status updates
    def progress_callback(percent: int, message: str):
        # Only print messages (not percents) for CLI output
        if message:
            print(message)

    try:
        if args.command == 'export':
            result = export_graph(args.input, args.output_dir, progress_callback=progress_callback)
            if not result['success']:
                print(f"\nError: {result['error']}")
                return 1
            print(f"\n✓ Graph written to {result['graph_path']}")
            return 0

        # Validate token format
        if not args.token or len(args.token) < 20:
            print("Error: Invalid token format")
            return 1

        try:
            config = _config_from_args(args)
        except FileNotFoundError as e:
            print(f"\nError: {e}")
            return 1
        except (json.JSONDecodeError, ValueError) as e:
            print(f"\nError: Invalid config file format: {e}")
            return 1

        is_valid, errors = config.validate()
        if not is_valid:
            print("\nError: Invalid configuration")
            for error in errors:
                print(f"  - {error}")
            return 1

        print(f"\n{'='*60}")
        print("CA Graph - Conditional Access Assignment Collector")
        print(f"{'='*60}")
        print(f"Started:     {start_timestamp}")
        print(f"Max depth:   {config.max_depth}")
        print(f"Output dir:  {config.output_dir}")
        print(f"{'='*60}")

        result = run_collection(args.token, config, progress_callback=progress_callback, verbose=not args.quiet)

        if not result['success']:
            print(f"\nError: {result['error']}")
            return 1

        runtime = result['runtime']
        minutes = int(runtime // 60)
        seconds = int(runtime % 60)
        runtime_str = f"{minutes}m {seconds}s" if minutes > 0 else f"{seconds}s"

        print(f"\n{'='*60}")
        print("Summary")
        print(f"{'='*60}")
        print(f"Runtime:       {runtime_str} ({runtime:.2f}s)")
        print(f"Policies:      {result['policy_count']}")
        print(f"Relationships: {result['relationship_count']}")
        print(f"Graph:         {result['node_count']} nodes, {result['edge_count']} edges")
        print(f"Anomalies:     {result['anomaly_count']}")
        for kind, count in sorted(result['anomalies'].items()):
            print(f"  {kind}: {count}")
        if result.get('warning'):
            print(f"\n⚠️ {result['warning']}")
        print(f"\n💡 To serve the graph: python ./web/api_server.py\n")
        print(f"{'='*60}")

        return 0

    except KeyboardInterrupt:
        print("\n\nCollection interrupted by user")
        return 1
    except Exception as e:
        print(f"\nUnexpected error: {e}")
        traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(main())
