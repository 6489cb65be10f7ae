"""
TunnelGuard CLI
Provision a tunnel server and manage its peers.
"""

import json
import sys
from typing import Optional

import click
from pydantic import ValidationError

import logging

from .collaborators.discovery import PublicEndpointDiscovery, resolve_endpoint
from .collaborators.host import HostInspector
from .errors import ConfigValidationError, InvalidNameError, TunnelGuardError
from .identity.store import PeerStatus, validate_peer_name
from .logging import configure_logging
from .platform.profile import detect_platform
from .provisioning.orchestrator import Collaborators, ProvisioningOrchestrator
from .provisioning.state import InstallPaths, ProvisionResult, ProvisionState
from .schemas.provision import DnsMode, ProvisionConfig, TunnelProtocol
from .utils.config import TunnelGuardSettings, get_settings

logger = logging.getLogger(__name__)


def build_orchestrator(settings: TunnelGuardSettings) -> ProvisioningOrchestrator:
    """Wire the orchestrator to the real host."""
    collaborators = Collaborators(
        host=HostInspector(tun_device_path=settings.TUN_DEVICE_PATH),
        detect_platform=lambda: detect_platform(settings.OS_RELEASE_PATH, settings.ARCH_RELEASE_PATH),
    )
    return ProvisioningOrchestrator(InstallPaths.from_settings(settings), collaborators)


def build_discovery(settings: TunnelGuardSettings) -> PublicEndpointDiscovery:
    return PublicEndpointDiscovery(settings.DISCOVERY_ENDPOINTS, timeout=settings.DISCOVERY_TIMEOUT_SECONDS)


def _fail(exc: TunnelGuardError) -> None:
    click.echo(f"Error: {exc}", err=True)
    sys.exit(exc.exit_code)


def _config_error(exc: ValidationError) -> ConfigValidationError:
    first = exc.errors()[0]
    key = ".".join(str(part) for part in first.get("loc", ())) or "config"
    return ConfigValidationError(key, first.get("msg", str(exc)))


def _prompt_peer_name(default: str) -> str:
    """Re-prompt until the name passes validation."""
    while True:
        name = click.prompt("Peer name (letters, digits, '_' and '-')", default=default)
        try:
            return validate_peer_name(name)
        except InvalidNameError as e:
            click.echo(e.message, err=True)


def _report(result: ProvisionResult) -> None:
    if result.installed:
        click.echo("Server installed.")
    click.echo(f"Peer '{result.peer_name}' bundle: {result.bundle_path}")
    if result.requires_operator_completion:
        click.echo("Action required: the public interface was not detected; complete the firewall scripts.")
    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)


@click.group()
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
@click.option("--json-logs", is_flag=True, help="Emit structured JSON logs")
@click.pass_context
def cli(ctx, log_level: Optional[str], json_logs: bool):
    """TunnelGuard tunnel server provisioning."""
    try:
        settings = get_settings()
    except ValidationError as e:
        _fail(_config_error(e))
    configure_logging(level=log_level or settings.LOG_LEVEL, json_format=True if json_logs else None)
    ctx.obj = settings


# === PROVISIONING ===
@cli.command()
@click.option("--auto/--interactive", "auto", default=None, help="Use documented defaults without prompting")
@click.option("--port", type=int, default=None, help="Listen port")
@click.option("--protocol", type=click.Choice([p.value for p in TunnelProtocol]), default=None)
@click.option("--dns-mode", type=click.Choice([m.value for m in DnsMode]), default=None)
@click.option("--endpoint", default=None, help="Public address peers connect to")
@click.option("--interface", default=None, help="Public interface for NAT")
@click.option("--peer-name", default=None, help="First peer to issue")
@click.pass_obj
def provision(
    settings: TunnelGuardSettings,
    auto: Optional[bool],
    port: Optional[int],
    protocol: Optional[str],
    dns_mode: Optional[str],
    endpoint: Optional[str],
    interface: Optional[str],
    peer_name: Optional[str],
):
    """
    Install the tunnel server (first run) and issue one peer.

    On an installed server only the peer is added.

    Example:
        tunnelguard provision --auto
    """
    auto = settings.AUTO_INSTALL if auto is None else auto
    orchestrator = build_orchestrator(settings)

    try:
        state = orchestrator.detect_state()
        config = None
        if state == ProvisionState.INSTALLED:
            click.echo("Server already installed; adding a peer.")
            config = orchestrator.installed_config()
        else:
            if auto:
                port = port or settings.DEFAULT_PORT
                protocol = protocol or settings.DEFAULT_PROTOCOL
                dns_mode = dns_mode or settings.DEFAULT_DNS_MODE
            else:
                port = port or click.prompt("Port", default=settings.DEFAULT_PORT, type=click.IntRange(1, 65535))
                protocol = protocol or click.prompt(
                    "Protocol", default=settings.DEFAULT_PROTOCOL,
                    type=click.Choice([p.value for p in TunnelProtocol]),
                )
                dns_mode = dns_mode or click.prompt(
                    "DNS", default=settings.DEFAULT_DNS_MODE,
                    type=click.Choice([m.value for m in DnsMode]),
                )

            if not endpoint:
                local = orchestrator.collaborators.host.local_address()
                endpoint = resolve_endpoint(local, build_discovery(settings))
                logger.info(f"Detected public endpoint {endpoint} (local address {local})")
                if not auto:
                    endpoint = click.prompt("Public address or hostname", default=endpoint)

            try:
                config = ProvisionConfig.from_settings(
                    settings,
                    endpoint=endpoint,
                    port=port,
                    protocol=protocol,
                    dns_mode=dns_mode,
                    interface=interface,
                )
            except ValidationError as e:
                raise _config_error(e)

        if peer_name is None:
            peer_name = settings.DEFAULT_PEER_NAME if auto else _prompt_peer_name(settings.DEFAULT_PEER_NAME)

        result = orchestrator.provision(peer_name, config)
    except TunnelGuardError as e:
        _fail(e)
    _report(result)


@cli.command("add-peer")
@click.argument("name", required=False)
@click.pass_obj
def add_peer(settings: TunnelGuardSettings, name: Optional[str]):
    """Issue a peer and write its bundle."""
    if name is None:
        name = _prompt_peer_name(settings.DEFAULT_PEER_NAME)
    try:
        result = build_orchestrator(settings).add_peer(name)
    except TunnelGuardError as e:
        _fail(e)
    _report(result)


@cli.command("revoke-peer")
@click.argument("name")
@click.pass_obj
def revoke_peer(settings: TunnelGuardSettings, name: str):
    """Revoke a peer and republish the revocation list."""
    try:
        record = build_orchestrator(settings).revoke_peer(name)
    except TunnelGuardError as e:
        _fail(e)
    click.echo(f"Peer '{record.name}' revoked (serial {record.serial}).")


@cli.command("list-peers")
@click.option("--status", type=click.Choice([s.value for s in PeerStatus]), default=None)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def list_peers(settings: TunnelGuardSettings, status: Optional[str], output_json: bool):
    """List issued peers."""
    try:
        records = build_orchestrator(settings).list_peers(PeerStatus(status) if status else None)
    except TunnelGuardError as e:
        _fail(e)

    if output_json:
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return
    if not records:
        click.echo("No peers issued.")
        return
    for record in records:
        click.echo(f"{record.name:<24} {record.status.value:<8} {record.serial}  {record.issued_at}")


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
