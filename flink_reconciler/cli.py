#!/usr/bin/env python3
"""
Flink reconciler CLI

Command-line interface for validating and operating FlinkDeployments.

Usage:
    python -m flink_reconciler.cli list [-n namespace]
    python -m flink_reconciler.cli status <name> [-n namespace]
    python -m flink_reconciler.cli validate <manifest.yaml> [--session-file session.yaml]
    python -m flink_reconciler.cli suspend <name> [-n namespace]
    python -m flink_reconciler.cli resume <name> [-n namespace]
    python -m flink_reconciler.cli savepoint <name> [-n namespace]
"""
import argparse
import json
import logging
import sys

import yaml

from .config import load_default_configuration
from .deployment_manager import FlinkDeploymentManager
from .exceptions import ValidationError
from .kubernetes_client import KubernetesClient
from .models import FlinkDeployment, FlinkSessionJob, SavepointTriggerType, to_dict
from .validation import create_validator_registry


def print_colored(text: str, color: str = 'default'):
    """Print with ANSI colors."""
    colors = {
        'green': '\033[0;32m',
        'yellow': '\033[1;33m',
        'blue': '\033[0;34m',
        'red': '\033[0;31m',
        'default': '\033[0m',
    }
    reset = '\033[0m'
    print(f"{colors.get(color, '')}{text}{reset}")


def print_status(deployment: FlinkDeployment, verbose: bool = False):
    """Print formatted deployment status."""
    status = deployment.status
    job_status = status.job_status
    savepoint_info = job_status.savepoint_info

    print_colored("=== FlinkDeployment Status ===", 'blue')
    print(f"Name:           {deployment.metadata.name}")
    print(f"JobManager:     {status.job_manager_deployment_status.value}")
    print(f"Job State:      {job_status.state or 'UNKNOWN'}")

    if job_status.start_time:
        print(f"Started:        {job_status.start_time}")
    if savepoint_info.last_savepoint:
        print(f"Savepoint:      {savepoint_info.last_savepoint.location}")
    if savepoint_info.trigger_in_progress:
        trigger_type = savepoint_info.trigger_type or SavepointTriggerType.UNKNOWN
        print(f"Pending:        {trigger_type.value} savepoint {savepoint_info.trigger_id}")
    if status.error:
        print_colored(f"Error:          {status.error}", 'red')

    if verbose:
        print_colored("\n=== Full Status ===", 'blue')
        print(json.dumps(to_dict(status), indent=2, default=str))


def _manager(args) -> FlinkDeploymentManager:
    k8s = KubernetesClient(namespace=args.namespace)
    registry = create_validator_registry(load_default_configuration(args.conf_dir))
    return FlinkDeploymentManager(k8s, registry)


def _load_manifest(path: str) -> dict:
    with open(path) as f:
        return yaml.safe_load(f)


def cmd_list(args):
    """List all Flink deployments."""
    k8s = KubernetesClient(namespace=args.namespace)

    print_colored(f"=== Flink Deployments in {args.namespace} ===", 'blue')
    items = k8s.list_flink_deployments()
    if not items:
        print("  (no deployments found)")
        return

    print(f"{'NAME':<25} {'JOBMANAGER':<20} {'JOB STATE':<15}")
    print("-" * 60)
    for item in items:
        deployment = FlinkDeployment.from_dict(item)
        job_state = deployment.status.job_status.state or 'UNKNOWN'
        jm_state = deployment.status.job_manager_deployment_status.value
        print(f"{deployment.metadata.name:<25} {jm_state:<20} {job_state:<15}")


def cmd_status(args):
    """Show deployment status."""
    k8s = KubernetesClient(namespace=args.namespace)

    manifest = k8s.get_flink_deployment(args.name)
    if manifest is None:
        print_colored(f"✗ FlinkDeployment {args.name} not found", 'red')
        sys.exit(1)
    print_status(FlinkDeployment.from_dict(manifest), verbose=args.verbose)


def cmd_validate(args):
    """Validate a manifest against the default validators."""
    registry = create_validator_registry(load_default_configuration(args.conf_dir))
    manifest = _load_manifest(args.file)

    if manifest.get("kind") == FlinkSessionJob.kind:
        session = FlinkDeployment.from_dict(_load_manifest(args.session_file)) if args.session_file else None
        error = registry.validate_session_job(FlinkSessionJob.from_dict(manifest), session)
    else:
        error = registry.validate_deployment(FlinkDeployment.from_dict(manifest))

    if error is not None:
        print_colored(f"✗ {error}", 'red')
        sys.exit(1)
    print_colored(f"✓ {args.file} is valid", 'green')


def cmd_suspend(args):
    """Suspend a Flink deployment."""
    manager = _manager(args)

    print_colored(f"Suspending {args.name}...", 'yellow')
    manager.suspend(args.name)
    print_colored(f"✓ Suspend request sent for {args.name}", 'green')

    if args.wait:
        print("Waiting for SUSPENDED state...")
        manager.wait_for_state(args.name, 'SUSPENDED', timeout=args.timeout)


def cmd_resume(args):
    """Resume a Flink deployment."""
    manager = _manager(args)

    print_colored(f"Resuming {args.name}...", 'yellow')
    manager.resume(args.name)
    print_colored(f"✓ Resume request sent for {args.name}", 'green')

    if args.wait:
        print("Waiting for RUNNING state...")
        manager.wait_for_state(args.name, 'RUNNING', timeout=args.timeout)


def cmd_savepoint(args):
    """Request a manual savepoint."""
    manager = _manager(args)
    nonce = manager.trigger_savepoint(args.name)
    print_colored(f"✓ Savepoint requested for {args.name} (nonce {nonce})", 'green')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Flink reconciler CLI - validate and operate FlinkDeployments',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m flink_reconciler.cli list                          # List all deployments
  python -m flink_reconciler.cli status stateful-test          # Show status
  python -m flink_reconciler.cli validate deployment.yaml      # Validate a manifest
  python -m flink_reconciler.cli suspend stateful-test --wait  # Suspend and wait
  python -m flink_reconciler.cli savepoint stateful-test       # Trigger a savepoint
"""
    )
    parser.add_argument('--namespace', '-n', default='default', help='Kubernetes namespace')
    parser.add_argument('--conf-dir', default=None, help='Directory holding the default flink-conf.yaml')

    subparsers = parser.add_subparsers(dest='command', required=True)

    list_parser = subparsers.add_parser('list', help='List all Flink deployments')
    list_parser.set_defaults(func=cmd_list)

    status_parser = subparsers.add_parser('status', help='Show deployment status')
    status_parser.add_argument('name', help='Deployment name')
    status_parser.add_argument('--verbose', '-v', action='store_true', help='Show full status JSON')
    status_parser.set_defaults(func=cmd_status)

    validate_parser = subparsers.add_parser('validate', help='Validate a manifest')
    validate_parser.add_argument('file', help='FlinkDeployment or FlinkSessionJob manifest')
    validate_parser.add_argument('--session-file', help='Session cluster manifest for a FlinkSessionJob')
    validate_parser.set_defaults(func=cmd_validate)

    suspend_parser = subparsers.add_parser('suspend', help='Suspend a deployment')
    suspend_parser.add_argument('name', help='Deployment name')
    suspend_parser.add_argument('--wait', '-w', action='store_true', help='Wait for SUSPENDED state')
    suspend_parser.add_argument('--timeout', '-t', type=int, default=120, help='Wait timeout in seconds')
    suspend_parser.set_defaults(func=cmd_suspend)

    resume_parser = subparsers.add_parser('resume', help='Resume a deployment')
    resume_parser.add_argument('name', help='Deployment name')
    resume_parser.add_argument('--wait', '-w', action='store_true', help='Wait for RUNNING state')
    resume_parser.add_argument('--timeout', '-t', type=int, default=300, help='Wait timeout in seconds')
    resume_parser.set_defaults(func=cmd_resume)

    savepoint_parser = subparsers.add_parser('savepoint', help='Trigger a manual savepoint')
    savepoint_parser.add_argument('name', help='Deployment name')
    savepoint_parser.set_defaults(func=cmd_savepoint)

    return parser


def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )
    args = build_parser().parse_args(argv)

    try:
        args.func(args)
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(130)
    except ValidationError as e:
        print_colored(f"✗ Rejected: {e.message}", 'red')
        sys.exit(1)
    except Exception as e:
        print_colored(f"✗ Error: {e}", 'red')
        sys.exit(1)


if __name__ == '__main__':
    main()
