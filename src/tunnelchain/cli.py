import json
import pathlib
import socket
import sys
import threading

import click
from pydantic import ValidationError

from tunnelchain.bridge import bridge
from tunnelchain.config import TunnelConfig
from tunnelchain.constants import (
    COLOR_RED,
    COLOR_RESET,
    STATUS_CLOSING,
    STATUS_FAILED,
    STATUS_FORWARDING,
    STATUS_LISTENING,
)
from tunnelchain.credentials import insecure_ignore_host_key, load_key_file, signer_fingerprints
from tunnelchain.errors import InvalidHopError, TunnelError
from tunnelchain.hop import split_host_port
from tunnelchain.logger import logger
from tunnelchain.tunnel import Tunnel


# Default arguments for all commands.
@click.group()
@click.version_option(package_name="tunnelchain", prog_name="tunnelchain")
@click.option(
    "--profile",
    "-p",
    "profile",
    envvar="TUNNELCHAIN_PROFILE",
    type=click.Path(
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
        resolve_path=True,
        path_type=pathlib.Path,
    ),
    default=None,
    help="Path to a connection profile.",
)
@click.option(
    "--hop",
    "-J",
    "hops",
    multiple=True,
    help="Hop in [user@]host[:port] form, repeat for each jump in order.",
)
@click.option("--key", "-i", "keyfiles", multiple=True, help="Private key file to authenticate with.")
@click.option("--agent/--no-agent", default=None, help="Use the SSH agent from SSH_AUTH_SOCK.")
@click.option("--known-hosts", default=None, help="known_hosts file to verify hosts against.")
@click.option(
    "--insecure",
    is_flag=True,
    default=False,
    help="Accept any host key. Only for throwaway hosts.",
)
@click.option("--timeout", type=float, default=None, help="Per-hop connect timeout in seconds.")
@click.option("--keepalive", type=float, default=None, help="Keepalive interval in seconds, 0 disables.")
@click.pass_context
def cli(ctx, profile, hops, keyfiles, agent, known_hosts, insecure, timeout, keepalive) -> None:
    ctx.ensure_object(dict)
    options = {}
    if hops:
        options["hops"] = list(hops)
    if keyfiles:
        options["signers"] = keyfiles
    if agent is not None:
        options["use_agent"] = agent
    if known_hosts is not None:
        options["known_hosts_path"] = known_hosts
    if insecure:
        options["host_key_callback"] = insecure_ignore_host_key
    if timeout is not None:
        options["per_hop_timeout"] = timeout
    if keepalive is not None:
        options["keepalive"] = keepalive
    ctx.obj["profile"] = profile
    ctx.obj["options"] = options


def _fail(message: str) -> None:
    print(f"{COLOR_RED}{message}{COLOR_RESET}", file=sys.stderr)
    sys.exit(1)


def _build_config(ctx) -> TunnelConfig:
    options = dict(ctx.obj["options"])
    try:
        options["signers"] = [load_key_file(k) for k in options.get("signers", [])]
        if ctx.obj["profile"] is not None:
            return TunnelConfig.from_profile(ctx.obj["profile"], **options)
        return TunnelConfig(**options)
    except (TunnelError, ValidationError, ValueError, OSError) as e:
        _fail(f"Invalid configuration: {e}")


def _open_tunnel(ctx) -> Tunnel:
    try:
        return Tunnel(_build_config(ctx))
    except TunnelError as e:
        _fail(f"{STATUS_FAILED}: {e}")


def _close_tunnel(tunnel: Tunnel) -> None:
    print(f"{STATUS_CLOSING}...", file=sys.stderr)
    try:
        tunnel.close()
    except TunnelError as e:
        logger.error(f"{STATUS_FAILED}: {e}")


def _wait_forever() -> None:
    stop = threading.Event()
    while not stop.wait(1):
        pass


@cli.command(help="Print the resulting tunnel configuration w/o connecting.")
@click.option(
    "--show-credentials",
    help="Print the key fingerprints used when connecting. Default: false",
    is_flag=True,
    default=False,
)
@click.pass_context
def show(ctx, show_credentials: bool) -> None:
    config = _build_config(ctx)
    output = {
        "hops": [hop.model_dump(include={"user", "host", "port", "timeout"}) for hop in config.hops],
        "agent": config.use_agent,
        "known_hosts": config.known_hosts_path,
        "timeout": config.per_hop_timeout,
        "keepalive": config.keepalive,
        "track_connections": config.track_connections,
    }
    if show_credentials:
        output["keys"] = [
            {"type": name, "fingerprint": fingerprint}
            for name, fingerprint in signer_fingerprints(config.signers)
        ]
    print(json.dumps(output, indent=4))


@cli.command(help="Connect to ADDRESS (host:port) from the last hop and relay stdin/stdout.")
@click.argument("address", type=str, required=True)
@click.pass_context
def dial(ctx, address: str) -> None:
    tunnel = _open_tunnel(ctx)
    try:
        conn = tunnel.dial("tcp", address)
    except TunnelError as e:
        tunnel.close()
        _fail(f"{STATUS_FAILED}: {e}")

    def send_stdin():
        stdin = sys.stdin.buffer
        try:
            while True:
                data = stdin.read1(32768)
                if not data:
                    break
                conn.sendall(data)
            conn.close_write()
        except OSError as e:
            logger.debug(f"stdin relay stopped: {e}")

    threading.Thread(target=send_stdin, daemon=True).start()
    try:
        while True:
            data = conn.recv(32768)
            if not data:
                break
            sys.stdout.buffer.write(data)
            sys.stdout.buffer.flush()
    except KeyboardInterrupt:
        pass
    finally:
        _close_tunnel(tunnel)


@cli.command(help="Listen on LOCAL (host:port) and forward connections to REMOTE via the last hop.")
@click.argument("local", type=str, required=True)
@click.argument("remote", type=str, required=True)
@click.pass_context
def forward(ctx, local: str, remote: str) -> None:
    tunnel = _open_tunnel(ctx)
    try:
        listener = tunnel.forward(local, remote)
    except TunnelError as e:
        tunnel.close()
        _fail(f"{STATUS_FAILED}: {e}")
    host, port = listener.address
    print(f"{STATUS_FORWARDING} {host}:{port} -> {remote}. Press Ctrl-C to stop.")
    try:
        _wait_forever()
    except KeyboardInterrupt:
        pass
    finally:
        _close_tunnel(tunnel)


@cli.command(help="Listen on REMOTE (host:port) at the last hop and relay connections to local TARGET.")
@click.argument("remote", type=str, required=True)
@click.argument("target", type=str, required=True)
@click.pass_context
def listen(ctx, remote: str, target: str) -> None:
    try:
        target_host, target_port = split_host_port(target)
    except InvalidHopError as e:
        _fail(f"Invalid target: {e}")
    tunnel = _open_tunnel(ctx)
    try:
        listener = tunnel.listen("tcp", remote)
    except TunnelError as e:
        tunnel.close()
        _fail(f"{STATUS_FAILED}: {e}")
    print(f"{STATUS_LISTENING} on {remote} at {tunnel.hops[-1]} -> {target}. Press Ctrl-C to stop.")

    def relay(channel):
        try:
            sock = socket.create_connection((target_host, target_port))
        except OSError as e:
            logger.warning(f"Connect to {target} failed: {e}")
            channel.close()
            return
        try:
            bridge(tunnel.track(channel), tunnel.track(sock), logger)
        except TunnelError:
            sock.close()

    try:
        while True:
            try:
                channel = listener.accept()
            except OSError:
                break
            threading.Thread(target=relay, args=(channel,), daemon=True).start()
    except KeyboardInterrupt:
        pass
    finally:
        _close_tunnel(tunnel)
