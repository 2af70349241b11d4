#!/usr/bin/env python3
"""
TEL Registry Command Line Interface

Provides command-line tools for working with exported member logs.

Usage:
    tel-registry demo --members 10 --output-dir logs/
    tel-registry verify logs/member-0001.json
    tel-registry state logs/member-0001.json
    tel-registry info
"""

import click
import json
import logging
import random
import sys
from pathlib import Path

from tel_registry import __version__
from tel_registry.config import ConfigError, RegistryConfig
from tel_registry.core.errors import CorruptLogInvariant, MalformedEvent, TelError
from tel_registry.core.registry import RegistryManager
from tel_registry.core.signer import Ed25519Signer
from tel_registry.core.state import replay_history
from tel_registry.core.verifier import ChainVerifier, load_log_file
from tel_registry.utils.helpers import describe_payload, truncate_hash


@click.group()
@click.version_option(version=__version__)
@click.option('--log-level', default='WARNING',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Logging level')
@click.option('--config', 'config_path', type=click.Path(exists=True), default=None,
              help='YAML configuration file')
@click.pass_context
def main(ctx, log_level, config_path):
    """TEL Registry: verifiable issuance and revocation logs"""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    try:
        if config_path:
            config = RegistryConfig.from_file(config_path)
        else:
            config = RegistryConfig.from_env()
    except ConfigError as e:
        raise click.ClickException(str(e))
    ctx.obj = config


def _load(input_file):
    try:
        return load_log_file(input_file)
    except MalformedEvent as e:
        raise click.ClickException(f"Cannot read {input_file}: {e.message}")


@main.command()
@click.option('--members', '-n', default=10, help='Number of members to create')
@click.option('--revoke-rate', '-r', default=0.3, help='Share of members revoked (0.0-1.0)')
@click.option('--reissue-rate', default=0.3, help='Share of revoked members issued again')
@click.option('--output-dir', '-o', default='tel-logs', help='Directory for exported logs')
@click.option('--seed', type=int, default=None, help='Random seed')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_obj
def demo(config, members, revoke_rate, reissue_rate, output_dir, seed, verbose):
    """Build a demo registry and export every member log."""
    rng = random.Random(seed)
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    signer = Ed25519Signer()
    with RegistryManager(config) as registry:
        registry.create_registry(Ed25519Signer(), no_backers=True)
        for i in range(members):
            member_id = f"member-{i:04d}"
            registry.inception(member_id, signer)
            registry.issue(member_id, signer, payload=f"credential-{i}".encode('utf-8'))
            if rng.random() < revoke_rate:
                registry.revoke(member_id, signer)
                if rng.random() < reissue_rate:
                    registry.issue(member_id, signer, payload=f"credential-{i}-v2".encode('utf-8'))
            registry.export_log(member_id, str(output_path / f"{member_id}.json"))
            if verbose:
                click.echo(f"  {member_id}: {registry.get_state(member_id).value}")

        stats = registry.get_statistics()

    if verbose:
        click.echo("\nDemo complete!")
        click.echo(f"  Registry: {truncate_hash(stats['registry_id'])}")
        click.echo(f"  Members: {stats['members']}")
        click.echo(f"  Events: {stats['events']}")
        for state, count in stats['states'].items():
            click.echo(f"  {state}: {count}")
        click.echo(f"  Output: {output_path}")
    else:
        click.echo(json.dumps({
            "registry_id": stats['registry_id'],
            "members": stats['members'],
            "events": stats['events'],
            "states": stats['states'],
            "output": str(output_path)
        }))


@main.command()
@click.argument('input_file', type=click.Path(exists=True))
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.option('--json-output', '-j', is_flag=True, help='Output as JSON')
@click.pass_obj
def verify(config, input_file, verbose, json_output):
    """Verify an exported member log independently."""
    export = _load(input_file)

    if verbose:
        click.echo(f"Verifying {len(export.events)} events for {export.member_id}...")

    verifier = ChainVerifier(
        export.public_keys,
        allow_reissuance=config.allow_reissuance,
        registry_id=export.registry_id
    )
    result = verifier.verify(export.events, verify_signatures=bool(export.public_keys))
    state_matches = export.state is None or export.state == result.state.value
    is_valid = result.is_valid and state_matches

    if json_output:
        report = result.to_dict()
        report["member_id"] = export.member_id
        report["declared_state"] = export.state
        report["state_matches"] = state_matches
        click.echo(json.dumps(report, indent=2))
    else:
        if is_valid:
            click.echo(click.style("VERIFICATION PASSED", fg='green', bold=True))
        else:
            click.echo(click.style("VERIFICATION FAILED", fg='red', bold=True))
            if result.error_message:
                click.echo(f"Error: {result.error_message}")
            if not state_matches:
                click.echo(f"Declared state {export.state} != replayed {result.state.value}")

        if verbose:
            click.echo(f"\nMember: {export.member_id}")
            click.echo(f"  Events verified: {result.events_verified}")
            click.echo(f"  Registry: {truncate_hash(export.registry_id)}")
            click.echo(f"  Keys: {len(export.public_keys)}")
            click.echo(f"  State: {result.state.value}")
            if result.first_invalid_index is not None:
                click.echo(f"  First invalid event: {result.first_invalid_index}")

    sys.exit(0 if is_valid else 1)


@main.command()
@click.argument('input_file', type=click.Path(exists=True))
@click.pass_obj
def state(config, input_file):
    """Replay an exported log and print its state history."""
    export = _load(input_file)
    try:
        history = replay_history(
            export.events,
            allow_reissuance=config.allow_reissuance,
            public_keys=export.public_keys or None,
            registry_id=export.registry_id
        )
    except CorruptLogInvariant as e:
        click.echo(click.style(f"CORRUPT LOG: {e.message}", fg='red', bold=True))
        sys.exit(2)

    click.echo(f"Member: {export.member_id}")
    if export.registry_id:
        click.echo(f"Registry: {export.registry_id}")
    for event, after in zip(export.events, history):
        click.echo(
            f"  {event.sequence_number:>4}  {event.event_type.value:<10}  "
            f"{truncate_hash(event.self_digest)}  {after.value:<7}  "
            f"{describe_payload(event.payload)}"
        )
    final = history[-1].value if history else "NULL"
    click.echo(f"State: {final}")


@main.command()
def info():
    """Show TEL Registry version and information."""
    click.echo(f"""
TEL Registry: Transaction Event Log
===================================

Version: {__version__}

Description:
  Append-only, hash-chained and signed logs of member issuance and
  revocation, verifiable by anyone holding the member's public keys.

Key Features:
  - Ed25519 signatures over a fixed binary encoding
  - Self-addressing event digests and hash-chain linkage
  - Fork and duplicate rejection (first valid event wins)
  - Escrow of out-of-order events with automatic promotion
  - Deterministic state derivation by replay
    """)


if __name__ == "__main__":
    try:
        main()
    except TelError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
