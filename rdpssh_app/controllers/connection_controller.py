from pathlib import Path
from typing import Callable, Optional, Union

from ..certificates import CertificateBundle
from ..config import TunnelOptions
from ..services.connection_service import ConnectionService
from ..tunnel import SessionResult, TunnelHandle, TunnelState


class ConnectionController:
    """Controller coordinating connection service calls for the UI."""

    def __init__(
        self,
        options: Optional[TunnelOptions] = None,
        log_sink: Optional[Callable[[str], None]] = None,
        **service_kwargs,
    ) -> None:
        self.service = ConnectionService(options, log_sink, **service_kwargs)

    @property
    def status(self) -> TunnelState:
        return self.service.status

    @property
    def is_active(self) -> bool:
        return self.service.is_active

    def validate_certificate(
        self, p12_path: Union[str, Path, None], password: str
    ) -> CertificateBundle:
        return self.service.load_certificate(p12_path, password)

    def describe_certificate(self, bundle: CertificateBundle) -> str:
        return self.service.describe_certificate(bundle)

    def test_connection(
        self, host: str, username: str, local_port, p12_path, password: str
    ) -> str:
        return self.service.test_connection(host, username, local_port, p12_path, password)

    def connect(
        self, host: str, username: str, local_port, p12_path, password: str
    ) -> TunnelHandle:
        return self.service.connect(host, username, local_port, p12_path, password)

    def disconnect(self) -> None:
        self.service.disconnect()

    def wait(self, timeout: Optional[float] = None) -> Optional[SessionResult]:
        return self.service.wait(timeout)

    def export_private_key(self, p12_path, password: str, destination) -> Path:
        return self.service.export_key(p12_path, password, destination, private=True)

    def export_public_key(self, p12_path, password: str, destination) -> Path:
        return self.service.export_key(p12_path, password, destination, private=False)
