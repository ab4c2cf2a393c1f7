"""Server lifecycle: creation, provisioning and deletion.

A server moves through ``created -> waiting_for_ip -> provisioning -> ready``;
``failed`` is reachable from ``waiting_for_ip`` and ``provisioning``, and a
failed server can be retried. Custom (user-supplied) hosts skip
``waiting_for_ip``. All status changes go through ``transition``.
"""

import asyncio
import json
import os
import shlex
import shutil
import tempfile
import uuid
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

import httpx
from fabric import Connection
from paramiko.ssh_exception import AuthenticationException

from .errors import (
    InvalidTransitionError,
    ProviderError,
    ProvisioningError,
    ServerCreationError,
    ServerDeletionError,
    ServerLifecycleError,
    ValidationError,
)
from .models import Integration, Server, ServerStatus, TunnelRecord
from .providers import get_server_provider, get_tunnel_provider
from .store import RecordStore
from .tunnels import remove_tunnel_for_server, setup_tunnel_for_server
from .utils import LogStream, log, logger, ssh_key_name, warn

TRANSITIONS: dict[ServerStatus, set[ServerStatus]] = {
    ServerStatus.CREATED: {ServerStatus.WAITING_FOR_IP, ServerStatus.PROVISIONING},
    ServerStatus.WAITING_FOR_IP: {ServerStatus.PROVISIONING, ServerStatus.FAILED},
    ServerStatus.PROVISIONING: {ServerStatus.READY, ServerStatus.FAILED},
    ServerStatus.FAILED: {ServerStatus.PROVISIONING},
    ServerStatus.READY: set(),
}

SSH_ATTEMPTS = 30
SSH_RETRY_DELAY = 2.0
DEFAULT_TARGET_USER = "deploy"
ANSIBLE_SSH_ARGS = "-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null"
ARCHITECTURES = {"aarch64": "aarch64", "arm64": "aarch64", "x86_64": "amd64", "amd64": "amd64"}


def can_transition(current: ServerStatus, target: ServerStatus) -> bool:
    return target in TRANSITIONS[current]


def transition(server: Server, target: ServerStatus) -> None:
    """Move ``server`` to ``target``.

    :raises InvalidTransitionError: If the state machine has no such edge
    """
    if not can_transition(server.status, target):
        raise InvalidTransitionError(server.status.value, target.value)
    logger.debug(f"Server '{server.id}': {server.status.value} -> {target.value}")
    server.status = target


def normalize_architecture(output: str) -> str:
    """Map ``uname -m`` output to ``aarch64`` or ``amd64``.

    :raises ProvisioningError: For any other architecture
    """
    arch = output.strip()
    if arch not in ARCHITECTURES:
        raise ProvisioningError("unsupported_architecture", f"'{arch}', only aarch64 and amd64 are supported")
    return ARCHITECTURES[arch]


def load_local_ssh_key() -> tuple[str, str]:
    """:return: (private_key, public_key) of the first key found in ~/.ssh"""
    ssh_dir = Path.home() / ".ssh"
    key_names = ["id_ed25519", "id_rsa", "id_ecdsa"]
    for name in key_names:
        private_path = ssh_dir / name
        public_path = ssh_dir / f"{name}.pub"
        if private_path.exists() and public_path.exists():
            log(f"Using SSH key: '{private_path}'")
            return private_path.read_text(), public_path.read_text().strip()
    raise ValidationError(
        "ssh_key",
        f"No SSH key pair found in ~/.ssh/ (tried: {', '.join(key_names)})",
        "Generate one with 'ssh-keygen -t ed25519'.",
    )


@contextmanager
def private_key_file(content: str | None):
    """Write a private key to a temporary 0600 file, removed on exit."""
    if not content:
        yield None
        return
    fd, path = tempfile.mkstemp(prefix="deployinfra-key-", suffix=".pem")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content if content.endswith("\n") else content + "\n")
        os.chmod(path, 0o600)
        yield path
    finally:
        Path(path).unlink(missing_ok=True)


# SSH


def ssh_connect_kwargs(server: Server, key_path: str | None, timeout: int) -> dict:
    connect_kwargs = {"timeout": timeout, "look_for_keys": False, "allow_agent": False}
    if server.use_ssh_key and key_path:
        connect_kwargs["key_filename"] = key_path
    elif server.password:
        connect_kwargs["password"] = server.password
    else:
        connect_kwargs["look_for_keys"] = True
        connect_kwargs["allow_agent"] = True
    return connect_kwargs


def run_ssh_command(server: Server, host: str, command: str, timeout: int = 10) -> str:
    """Run one command over SSH with the server's credentials.

    :return: Command stdout
    :raises ProvisioningError: ``execution_failed`` on a non-zero exit
    """
    key = server.ssh_private_key if server.use_ssh_key else None
    with private_key_file(key) as key_path:
        with Connection(
            host,
            user=server.username,
            port=server.port or 22,
            connect_kwargs=ssh_connect_kwargs(server, key_path, timeout),
        ) as c:
            result = c.run(command, hide=True, warn=True, in_stream=False)
    if result.failed:
        raise ProvisioningError("execution_failed", f"'{command}' exited {result.exited}: {result.stderr.strip()}")
    return result.stdout


class SSHProbe(Protocol):
    async def wait_for_ssh(self, server: Server, host: str) -> None: ...

    async def run(self, server: Server, host: str, command: str) -> str: ...

    async def test_connection(self, server: Server, host: str) -> None: ...


class FabricSSH:
    """SSH probes over fabric, run in worker threads.

    :param attempts: Connection attempts in ``wait_for_ssh``
    :param delay: Seconds between attempts
    """

    def __init__(self, attempts: int = SSH_ATTEMPTS, delay: float = SSH_RETRY_DELAY, timeout: int = 10):
        self.attempts = attempts
        self.delay = delay
        self.timeout = timeout

    async def run(self, server: Server, host: str, command: str) -> str:
        return await asyncio.to_thread(run_ssh_command, server, host, command, self.timeout)

    async def wait_for_ssh(self, server: Server, host: str) -> None:
        log(f"Waiting for SSH on '{host}'...")
        for attempt in range(1, self.attempts + 1):
            try:
                await self.run(server, host, "echo ok")
                log("SSH ready")
                return
            except Exception as e:
                logger.debug(f"SSH attempt {attempt}/{self.attempts} on '{host}': {type(e).__name__}: {e}")
                await asyncio.sleep(self.delay)
        raise ProvisioningError(
            "ssh_unreachable", f"'{host}:{server.port or 22}' after {self.attempts} attempts"
        )

    async def test_connection(self, server: Server, host: str) -> None:
        try:
            await self.run(server, host, "echo ok")
        except AuthenticationException as e:
            raise ServerCreationError(
                "connection_failed", f"authentication rejected for '{server.username}@{host}'"
            ) from e
        except Exception as e:
            raise ServerCreationError("connection_failed", f"'{host}': {e}") from e


# Configuration management


class ConfigurationRunner(Protocol):
    async def run(
        self,
        playbook: str,
        server: Server,
        *,
        tunnel: TunnelRecord | None = None,
        extra_vars: dict | None = None,
        force_tunnel: bool = False,
    ) -> None: ...


def task_name(line: str) -> str | None:
    """Progress label for a ``TASK [name] ***`` line, else None."""
    start = line.find("TASK [")
    if start == -1:
        return None
    end = line.find("]", start)
    if end == -1:
        return None
    return f"Running: {line[start + 6:end]}"


def failure_summary(stdout_lines: list[str], stderr_lines: list[str], returncode: int) -> str:
    if stderr_lines:
        return "\n".join(stderr_lines[-10:])
    errors = [
        line.strip()
        for line in stdout_lines
        if "fatal:" in line or "failed:" in line or ("FAILED!" in line and "=>" in line)
    ]
    if errors:
        return "\n".join(errors[-5:])
    return f"ansible-playbook exited with code {returncode}"


class AnsibleRunner:
    """Run ``ansible-playbook`` against a single server.

    Output is streamed line by line through the logger; ``TASK [...]`` lines
    are reported to ``on_progress``.

    :param playbook_dir: Directory holding ``{name}.yml`` playbooks
    :param on_progress: Callback for progress labels, defaults to ``log``
    """

    def __init__(
        self,
        playbook_dir: str | Path,
        *,
        executable: str = "ansible-playbook",
        on_progress: Callable[[str], None] | None = None,
    ):
        self.playbook_dir = Path(playbook_dir)
        self.executable = executable
        self.on_progress = on_progress or log

    def playbook_path(self, name: str) -> Path:
        path = self.playbook_dir / f"{name}.yml"
        if not path.exists():
            raise ProvisioningError("playbook_not_found", str(path))
        return path

    def inventory(self, server: Server, tunnel: TunnelRecord | None = None, force_tunnel: bool = False) -> str:
        """INI inventory with a single host line.

        Connects through the tunnel hostname once the server is ready (or when
        forced), otherwise to the server's IP.
        """
        if not server.has_complete_config:
            raise ProvisioningError("incomplete_config", "username, port and auth method are required")
        use_tunnel = tunnel is not None and (server.status == ServerStatus.READY or force_tunnel)
        host = tunnel.ssh_hostname if use_tunnel else server.host
        if not host:
            raise ProvisioningError("incomplete_config", "server has no host")

        parts = [host, f"ansible_user={server.username}", f"ansible_port={server.port}"]
        if not server.use_ssh_key and server.password:
            parts.append(f"ansible_password={shlex.quote(server.password)}")
        if server.effective_sudo_password and (server.sudo_password or not server.use_ssh_key):
            parts.append(f"ansible_become_password={shlex.quote(server.effective_sudo_password)}")
        if use_tunnel:
            cloudflared = shutil.which("cloudflared") or "cloudflared"
            proxy = f'-o ProxyCommand="{cloudflared} access ssh --hostname %h"'
            parts.append(f"ansible_ssh_common_args={shlex.quote(proxy)}")
        return "[servers]\n" + " ".join(parts) + "\n"

    def command(
        self, inventory_path: str, playbook_path: Path, extra_vars: dict | None, key_path: str | None
    ) -> list[str]:
        cmd = [self.executable, "-i", inventory_path, str(playbook_path)]
        if extra_vars:
            cmd.extend(["--extra-vars", json.dumps(extra_vars)])
        if key_path:
            cmd.extend(["--private-key", key_path])
        return cmd

    def _on_line(self, line: str) -> None:
        progress = task_name(line)
        if progress:
            self.on_progress(progress)
        elif "PLAY RECAP" in line:
            self.on_progress("Finalizing...")

    async def run(
        self,
        playbook: str,
        server: Server,
        *,
        tunnel: TunnelRecord | None = None,
        extra_vars: dict | None = None,
        force_tunnel: bool = False,
    ) -> None:
        """
        :raises ProvisioningError: ``playbook_not_found`` or ``execution_failed``
        """
        path = self.playbook_path(playbook)
        inventory = self.inventory(server, tunnel, force_tunnel)
        env = {**os.environ, "ANSIBLE_SSH_ARGS": ANSIBLE_SSH_ARGS, "ANSIBLE_HOST_KEY_CHECKING": "False"}

        with tempfile.TemporaryDirectory(prefix="deployinfra-ansible-") as tmp:
            inventory_path = os.path.join(tmp, "inventory.ini")
            Path(inventory_path).write_text(inventory)
            key = server.ssh_private_key if server.use_ssh_key else None
            with private_key_file(key) as key_path:
                cmd = self.command(inventory_path, path, extra_vars, key_path)
                log(f"Running playbook '{playbook}' on '{server.name or server.host}'")
                try:
                    proc = await asyncio.create_subprocess_exec(
                        *cmd,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.PIPE,
                        env=env,
                    )
                except FileNotFoundError as e:
                    raise ProvisioningError("execution_failed", f"'{self.executable}' not found on PATH") from e

                stdout_lines: list[str] = []
                stderr_lines: list[str] = []

                def on_stdout(line: str) -> None:
                    stdout_lines.append(line)
                    self._on_line(line)

                async def read_stdout() -> None:
                    stream = LogStream(on_line=on_stdout)
                    async for raw in proc.stdout:
                        stream.write(raw.decode(errors="replace"))
                    stream.flush()

                async def read_stderr() -> None:
                    async for raw in proc.stderr:
                        line = raw.decode(errors="replace").rstrip()
                        if line:
                            stderr_lines.append(line)
                            logger.warning(line)

                await asyncio.gather(read_stdout(), read_stderr())
                returncode = await proc.wait()

        if returncode != 0:
            raise ProvisioningError("execution_failed", failure_summary(stdout_lines, stderr_lines, returncode))
        log(f"Playbook '{playbook}' completed")


# Coordinator


@dataclass
class TunnelRequest:
    """Where to expose a server's SSH port: ``{subdomain}.{zone_name}``."""

    integration_id: str
    zone_id: str
    zone_name: str
    subdomain: str


class DeletionPhase(str, Enum):
    DELETING_TUNNEL = "deleting_tunnel"
    DELETING_PROVIDER = "deleting_provider"
    COMPLETED = "completed"


class ServerCoordinator:
    """Drive servers through their lifecycle against the record store.

    :param store: Persisted records (servers, integrations, tunnels)
    :param runner: Configuration-management runner
    :param ssh: SSH probes used for reachability and architecture detection
    :param http: Shared ``httpx.AsyncClient`` passed to every vendor adapter
    :param target_user: Non-root user created on vendor servers
    """

    def __init__(
        self,
        store: RecordStore,
        runner: ConfigurationRunner,
        ssh: SSHProbe | None = None,
        *,
        http: httpx.AsyncClient | None = None,
        target_user: str = DEFAULT_TARGET_USER,
        vps_factory=get_server_provider,
        tunnel_factory=get_tunnel_provider,
    ):
        self.store = store
        self.runner = runner
        self.ssh = ssh or FabricSSH()
        self.http = http
        self.target_user = target_user
        self.vps_factory = vps_factory
        self.tunnel_factory = tunnel_factory

    # Records

    def list_servers(self) -> list[Server]:
        return [Server.from_dict(d) for d in self.store.all("server")]

    def get_server(self, id_or_name: str) -> Server:
        data = self.store.get("server", id_or_name)
        if data is None:
            matches = self.store.filter("server", name=id_or_name)
            data = matches[0] if matches else None
        if data is None:
            raise ServerLifecycleError("not_found", f"server '{id_or_name}'")
        return Server.from_dict(data)

    def save(self, server: Server) -> None:
        self.store.set("server", server.id, server.to_dict())

    def get_integration(self, integration_id: str) -> Integration:
        data = self.store.get("integration", integration_id)
        if data is None:
            raise ServerLifecycleError("not_found", f"integration '{integration_id}'")
        return Integration.from_dict(data)

    def get_tunnel(self, server: Server) -> TunnelRecord | None:
        if not server.tunnel_id:
            return None
        data = self.store.get("tunnel", server.tunnel_id)
        return TunnelRecord.from_dict(data) if data else None

    def _check_name(self, name: str | None) -> None:
        if name and self.store.filter("server", name=name):
            warn(f"Server name '{name}' already exists")
            raise ServerCreationError("duplicate_server_name", name)

    async def _setup_tunnel(self, server: Server, request: TunnelRequest, server_name: str) -> TunnelRecord:
        integration = self.get_integration(request.integration_id)
        provider = self.tunnel_factory(integration, http=self.http)
        try:
            record = await setup_tunnel_for_server(
                provider,
                server_name,
                request.zone_id,
                request.zone_name,
                request.subdomain,
                integration_id=integration.id,
                server_id=server.id,
            )
        finally:
            await provider.aclose()
        self.store.set("tunnel", record.id, record.to_dict())
        server.tunnel_id = record.id
        return record

    async def add_tunnel(self, server_id: str, request: TunnelRequest) -> TunnelRecord:
        """Expose an existing server's SSH port through a new tunnel."""
        server = self.get_server(server_id)
        if server.tunnel_id:
            raise ValidationError("tunnel", f"Server '{server_id}' already has a tunnel")
        record = await self._setup_tunnel(server, request, server.name or server.host or server.id)
        self.save(server)
        return record

    async def remove_tunnel(self, record_id: str) -> None:
        """Tear down a tunnel record (attached or orphaned) and detach its server."""
        data = self.store.get("tunnel", record_id)
        if data is None:
            raise ServerLifecycleError("not_found", f"tunnel '{record_id}'")
        tunnel = TunnelRecord.from_dict(data)
        integration = self._find_tunnel_integration(tunnel)
        if integration is None:
            raise ServerLifecycleError("not_found", "Cloudflare integration for tunnel")
        provider = self.tunnel_factory(integration, http=self.http)
        try:
            await remove_tunnel_for_server(provider, tunnel)
        finally:
            await provider.aclose()
        self.store.delete("tunnel", tunnel.id)
        for server in self.list_servers():
            if server.tunnel_id == tunnel.id:
                server.tunnel_id = None
                self.save(server)

    # Creation

    async def create_custom_server(
        self,
        host: str,
        username: str,
        *,
        name: str | None = None,
        port: int = 22,
        ssh_private_key: str | None = None,
        ssh_public_key: str | None = None,
        password: str | None = None,
        sudo_password: str | None = None,
        tunnel: TunnelRequest | None = None,
        check_connection: bool = True,
    ) -> Server:
        """Register a user-supplied host.

        The sudo password defaults to the SSH password when password auth is
        used. The server is saved in ``created``, ready for ``provision``.

        :raises ServerCreationError: ``duplicate_server_name`` or ``connection_failed``
        """
        name = name or None
        self._check_name(name)
        use_ssh_key = bool(ssh_private_key)
        if not use_ssh_key and not password:
            raise ValidationError("password", "Either an SSH private key or a password is required")

        server = Server(
            name=name,
            username=username,
            host=host,
            port=port,
            use_ssh_key=use_ssh_key,
            password=None if use_ssh_key else password,
            sudo_password=sudo_password or (None if use_ssh_key else password),
            ssh_private_key=ssh_private_key,
            ssh_public_key=ssh_public_key,
        )

        if check_connection:
            log(f"Testing connection to '{host}'...")
            await self.ssh.test_connection(server, host)

        if tunnel is not None:
            await self._setup_tunnel(server, tunnel, name or host)

        self.save(server)
        log(f"Saved server '{name or host}' ('{server.id}')")
        return server

    async def create_server_from_integration(
        self,
        integration_id: str,
        region: str,
        size: str,
        *,
        ssh_private_key: str,
        ssh_public_key: str,
        name: str | None = None,
        tunnel: TunnelRequest | None = None,
    ) -> Server:
        """Create a Debian server at a VPS vendor and save it in ``waiting_for_ip``.

        If tunnel setup fails, the vendor server is deleted again before the
        error propagates.

        :raises ServerCreationError: ``missing_api_token`` or ``duplicate_server_name``
        """
        integration = self.get_integration(integration_id)
        if not integration.is_configured:
            raise ServerCreationError("missing_api_token")
        name = name or None
        self._check_name(name)

        provider = self.vps_factory(integration, http=self.http)
        try:
            ssh_key_id = await provider.upload_ssh_key(ssh_key_name(ssh_public_key), ssh_public_key)
            image = await provider.get_latest_debian_image()
            log(f"Selected Debian image: '{image}'")
            server_name = name or uuid.uuid4().hex[:8]
            vendor_server = await provider.create_server(server_name, region, size, image, ssh_key_id)
            log(f"Created server '{server_name}' at {integration.display_name} ('{vendor_server.id}')")

            server = Server(
                name=name,
                integration_id=integration.id,
                integration_server_id=vendor_server.id,
                username="root",
                host=vendor_server.ipv4,
                port=22,
                use_ssh_key=True,
                ssh_private_key=ssh_private_key,
                ssh_public_key=ssh_public_key,
            )
            transition(server, ServerStatus.WAITING_FOR_IP)

            if tunnel is not None:
                try:
                    await self._setup_tunnel(server, tunnel, server_name)
                except Exception:
                    warn(f"Tunnel setup failed, deleting server '{vendor_server.id}'")
                    try:
                        await provider.delete_server(vendor_server.id)
                    except Exception as cleanup_error:
                        warn(f"Could not delete server '{vendor_server.id}': {cleanup_error}")
                    raise
        finally:
            await provider.aclose()

        self.save(server)
        return server

    # Provisioning

    async def provision(self, server_id: str) -> Server:
        """Provision a new server: wait for its IP and SSH, then configure it.

        :raises InvalidTransitionError: Unless the server is ``created`` or ``waiting_for_ip``
        """
        server = self.get_server(server_id)
        if server.status not in (ServerStatus.CREATED, ServerStatus.WAITING_FOR_IP):
            raise InvalidTransitionError(server.status.value, ServerStatus.PROVISIONING.value)
        return await self._provision(server)

    async def retry(self, server_id: str) -> Server:
        """Re-run provisioning on a failed server, keeping its vendor resource."""
        server = self.get_server(server_id)
        if server.status != ServerStatus.FAILED:
            raise InvalidTransitionError(server.status.value, ServerStatus.PROVISIONING.value)
        return await self._provision(server)

    async def _wait_for_ip(self, server: Server) -> str:
        integration = self.get_integration(server.integration_id)
        provider = self.vps_factory(integration, http=self.http)
        try:
            log(f"Waiting for server '{server.integration_server_id}' to boot...")
            vendor_server = await provider.wait_for_server_active(server.integration_server_id)
        finally:
            await provider.aclose()
        return vendor_server.ipv4

    async def _provision(self, server: Server) -> Server:
        label = server.name or server.host or server.id
        tunnel = self.get_tunnel(server)
        try:
            if server.is_managed and (server.status == ServerStatus.WAITING_FOR_IP or not server.host):
                server.host = await self._wait_for_ip(server)
                self.save(server)
            transition(server, ServerStatus.PROVISIONING)
            self.save(server)
            await self._configure(server, tunnel)
            transition(server, ServerStatus.READY)
            self.save(server)
        except Exception as e:
            if can_transition(server.status, ServerStatus.FAILED):
                transition(server, ServerStatus.FAILED)
                self.save(server)
            warn(f"Provisioning of '{label}' failed: {e}")
            raise
        log(f"Server '{label}' is ready")
        return server

    async def _configure(self, server: Server, tunnel: TunnelRecord | None) -> None:
        if not server.has_complete_config:
            raise ProvisioningError("incomplete_config", "username, port and auth method are required")
        host = server.host
        if not host:
            raise ProvisioningError("ssh_unreachable", "server has no IP address")

        await self.ssh.wait_for_ssh(server, host)
        server.architecture = normalize_architecture(await self.ssh.run(server, host, "uname -m"))
        log(f"Detected architecture: '{server.architecture}'")

        if server.username == "root":
            await self.runner.run(
                "prepare-ssh",
                server,
                extra_vars={
                    "deployinfra_target_user": self.target_user,
                    "deployinfra_ssh_public_key": server.ssh_public_key,
                },
            )
            server.username = self.target_user
            self.save(server)

        tunnel_vars = {}
        if tunnel is not None:
            tunnel_vars = {
                "tunnel_id": tunnel.tunnel_id,
                "tunnel_token": tunnel.token,
                "ssh_hostname": tunnel.ssh_hostname,
            }
        await self.runner.run(
            "provision-server",
            server,
            tunnel=tunnel,
            extra_vars={
                "deployinfra_target_user": server.username,
                "deployinfra_ssh_public_key": server.ssh_public_key,
                "has_cloudflare_tunnel": "true" if tunnel else "false",
                **tunnel_vars,
            },
        )

        if tunnel is not None:
            log(f"Testing tunnel connection via '{tunnel.ssh_hostname}'...")
            try:
                await self.runner.run("test-tunnel", server, tunnel=tunnel, force_tunnel=True)
            except ProvisioningError as e:
                raise ProvisioningError("tunnel_unreachable", f"'{tunnel.ssh_hostname}': {e.details}") from e
            log("Closing SSH port (tunnel-only access)...")
            await self.runner.run(
                "close-ssh-port", server, tunnel=tunnel, extra_vars={**tunnel_vars, "close_ssh_port": "true"}
            )

    # Deletion

    def _find_tunnel_integration(self, tunnel: TunnelRecord) -> Integration | None:
        if tunnel.integration_id:
            data = self.store.get("integration", tunnel.integration_id)
            if data:
                return Integration.from_dict(data)
        matches = self.store.filter("integration", type="cloudflare")
        return Integration.from_dict(matches[0]) if matches else None

    def _orphan_tunnel(self, tunnel: TunnelRecord) -> None:
        tunnel.server_id = None
        self.store.set("tunnel", tunnel.id, tunnel.to_dict())
        warn(f"Tunnel '{tunnel.tunnel_id}' detached, clean it up with 'deployinfra tunnel teardown'")

    async def delete_server(
        self,
        server_id: str,
        *,
        accept_orphans: bool = False,
        on_phase: Callable[[DeletionPhase], None] | None = None,
    ) -> None:
        """Delete the server's tunnel, its vendor resource, then the local record.

        A failed tunnel teardown stops the deletion unless ``accept_orphans``;
        the tunnel record is kept, detached, for later cleanup.

        :raises ServerDeletionError: With the phase that failed
        """
        server = self.get_server(server_id)
        label = server.name or server.host or server.id

        def phase(p: DeletionPhase) -> None:
            logger.debug(f"Deleting '{label}': {p.value}")
            if on_phase is not None:
                on_phase(p)

        tunnel = self.get_tunnel(server)
        if tunnel is not None:
            phase(DeletionPhase.DELETING_TUNNEL)
            integration = self._find_tunnel_integration(tunnel)
            if integration is None:
                self._orphan_tunnel(tunnel)
            else:
                provider = self.tunnel_factory(integration, http=self.http)
                try:
                    await remove_tunnel_for_server(provider, tunnel)
                    self.store.delete("tunnel", tunnel.id)
                except Exception as e:
                    self._orphan_tunnel(tunnel)
                    if not accept_orphans:
                        raise ServerDeletionError("cloudflare_failed", str(e)) from e
                finally:
                    await provider.aclose()
            server.tunnel_id = None
            self.save(server)

        if server.is_managed:
            phase(DeletionPhase.DELETING_PROVIDER)
            data = self.store.get("integration", server.integration_id)
            integration = Integration.from_dict(data) if data else None
            if integration is None or not integration.is_configured:
                raise ServerDeletionError("provider_failed", "No credentials found for integration")
            await self._delete_vendor_server(integration, server.integration_server_id)

        phase(DeletionPhase.COMPLETED)
        self.store.delete("server", server.id)
        log(f"Deleted server '{label}'")

    async def _delete_vendor_server(self, integration: Integration, vendor_server_id: str) -> None:
        provider = self.vps_factory(integration, http=self.http)
        try:
            await provider.delete_server(vendor_server_id)
        except ProviderError as e:
            if e.kind in ("not_found", "server_not_found"):
                warn(f"Server '{vendor_server_id}' no longer exists at {integration.display_name}")
                return
            if e.kind in ("network_error", "timeout"):
                raise ServerDeletionError("network_error", e.description) from e
            if e.kind in ("unauthorized", "forbidden") or e.code in (401, 403):
                raise ServerDeletionError("unauthorized", integration.display_name) from e
            raise ServerDeletionError("provider_failed", e.description) from e
        finally:
            await provider.aclose()
