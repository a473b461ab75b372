# -----------------------------------------------------------------------------
# DOCKER PROVIDER
# -----------------------------------------------------------------------------
# Responsibility: A robust wrapper around the Docker SDK with connection
# validation, registry login and detailed error reporting.
#
# This is part of the Infrastructure layer - it provides low-level Docker
# access to the Builder and Publisher without exposing SDK complexity.
# -----------------------------------------------------------------------------

import os
import time

import docker
from docker import DockerClient
from docker.errors import APIError, DockerException
from rich.console import Console
from rich.panel import Panel

console = Console()

# Connection attempts before the provider gives up
CONNECT_ATTEMPTS = 3


class DockerProviderError(Exception):
    """Raised when Docker connection fails and cannot be recovered."""

    pass


class DockerProvider:
    """
    Docker SDK wrapper shared by the Builder and the Publisher.

    Responsibilities:
    - Encapsulates all Docker connection logic in one place
    - Reconnects lazily when the daemon restarts under a long-running service
    - Holds registry credentials so callers never handle them
    """

    def __init__(self, client: DockerClient | None = None, connect: bool = True) -> None:
        """
        Initialize the Docker provider.

        Args:
            client: Pre-built client (tests, custom DOCKER_HOST setups).
            connect: If True, connect to the daemon immediately.
        """
        self._client: DockerClient | None = client
        self._username = os.getenv("REGISTRY_USERNAME")
        self._password = os.getenv("REGISTRY_PASSWORD")
        self._registry = os.getenv("REGISTRY_URL")

        if self._client is None and connect:
            self._connect()

    def _connect(self) -> None:
        """
        Establish connection to the Docker daemon.

        Raises:
            DockerProviderError: If the daemon stays unreachable.
        """
        last_error: Exception | None = None
        for attempt in range(1, CONNECT_ATTEMPTS + 1):
            try:
                self._client = docker.from_env()
                self._client.ping()
                console.print("[green][DOCKER] Connected to Docker Engine[/green]")
                return
            except DockerException as e:
                last_error = e
                self._client = None
                console.print(
                    f"[yellow][DOCKER] Engine unreachable (attempt {attempt}/{CONNECT_ATTEMPTS})[/yellow]"
                )
                time.sleep(attempt)

        console.print(
            Panel(
                "[bold red]Docker Engine Unavailable[/bold red]\n\n"
                "1. Check DOCKER_HOST\n"
                "2. Check the daemon is running\n"
                "3. Restart Tollgate",
                title="BUILDER OFFLINE",
                border_style="red",
            )
        )
        raise DockerProviderError(f"Docker Engine is not available: {last_error}")

    def get_client(self) -> DockerClient:
        """
        Get the Docker client, verifying connection is still active.

        Raises:
            DockerProviderError: If Docker connection is lost.
        """
        if self._client is None:
            self._connect()

        try:
            self._client.ping()
            return self._client
        except DockerException as e:
            console.print(f"[red][DOCKER] Connection lost: {e}[/red]")
            self._client = None
            self._connect()
            return self._client

    def auth_config(self) -> dict | None:
        """Registry credentials for push/pull calls, if configured."""
        if self._username and self._password:
            return {"username": self._username, "password": self._password}
        return None

    def login(self) -> bool:
        """
        Log in to the configured registry.

        Returns:
            True if credentials are configured and accepted.
        """
        if not self.auth_config():
            console.print("[yellow][DOCKER] Registry credentials not set - anonymous push[/yellow]")
            return False

        try:
            self.get_client().login(
                username=self._username, password=self._password, registry=self._registry
            )
            console.print(f"[green][DOCKER] Logged in to {self._registry or 'default registry'}[/green]")
            return True
        except APIError as e:
            console.print(f"[red][DOCKER] Registry login failed: {e.explanation}[/red]")
            return False

    def is_connected(self) -> bool:
        """
        Check if Docker is currently reachable.

        Returns:
            True if Docker is connected and responsive.
        """
        if self._client is None:
            return False
        try:
            self._client.ping()
            return True
        except DockerException:
            return False
