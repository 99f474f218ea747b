"""Network reachability checks run before any credential page request."""

import socket
from typing import NamedTuple, Protocol

from src.attendance.errors import NetworkUnavailable
from src.attendance.logging import get_logger

log = get_logger(__name__)


class NetworkState(NamedTuple):
    connected: bool
    address: str | None


class Connectivity(Protocol):
    async def network_state(self) -> NetworkState: ...


class SocketConnectivity:
    """Reports reachability by routing a UDP socket toward a public resolver.

    connect() on a UDP socket sends nothing; it only asks the OS for a route,
    which yields the local address the request would leave from.
    """

    def __init__(self, probe_host: str = "8.8.8.8", probe_port: int = 53) -> None:
        self.probe_host = probe_host
        self.probe_port = probe_port

    async def network_state(self) -> NetworkState:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.connect((self.probe_host, self.probe_port))
            address = sock.getsockname()[0]
        except OSError as e:
            log.debug("network_probe_failed", error=str(e))
            return NetworkState(connected=False, address=None)
        finally:
            sock.close()
        if address in ("", "0.0.0.0"):
            return NetworkState(connected=True, address=None)
        return NetworkState(connected=True, address=address)


async def ensure_network(connectivity: Connectivity) -> str:
    """Return the local address, or raise when there is no network path.

    Raises:
        NetworkUnavailable: If disconnected or no local address was found.
    """
    state = await connectivity.network_state()
    if not state.connected:
        raise NetworkUnavailable("No hay conexión a internet")
    if not state.address:
        raise NetworkUnavailable("No se detectó IP local (red no reachable)")
    return state.address
