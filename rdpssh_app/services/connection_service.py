import logging
from pathlib import Path
from typing import Callable, Optional, Union

import paramiko

from .. import auth
from ..certificates import CertificateBundle, load_certificate_bundle
from ..config import TunnelOptions
from ..errors import InputError
from ..key_export import export_private_key, export_public_key, write_key_file
from ..tunnel import (
    SessionResult,
    TunnelHandle,
    TunnelManager,
    TunnelState,
    validate_local_port,
)
from ..viewer import ViewerLauncher


class ConnectionService:
    """Service layer validating input and driving the tunnel manager."""

    def __init__(
        self,
        options: Optional[TunnelOptions] = None,
        log_sink: Optional[Callable[[str], None]] = None,
        launcher=None,
        client_cls: type = paramiko.SSHClient,
    ) -> None:
        """Create the service.

        Parameters
        ----------
        options: TunnelOptions | None
            Tunables read from ``config.ini``. Defaults are used when ``None``.
        log_sink: callable, optional
            Receives tunnel progress messages from any thread.
        launcher: optional
            Object with ``launch(address, username)``; defaults to a
            :class:`~rdpssh_app.viewer.ViewerLauncher` for the configured
            viewer command.
        client_cls: type
            SSH client class, replaceable in tests.
        """
        self.options = options or TunnelOptions()
        self.client_cls = client_cls
        self.logger = logging.getLogger(__name__)
        if launcher is None:
            launcher = ViewerLauncher(self.options.viewer_command)
        self.manager = TunnelManager(
            launcher=launcher,
            log_sink=log_sink,
            remote_host=self.options.remote_host,
            remote_port=self.options.remote_port,
            keepalive_interval=self.options.keepalive_interval,
            connect_timeout=self.options.connect_timeout,
            host_key_policy=self.options.host_key_policy,
            known_hosts_file=self.options.known_hosts_file,
            client_cls=client_cls,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate_inputs(self, host: str, username: str, local_port) -> int:
        if not host or not host.strip():
            raise InputError("remote host is required")
        if not username or not username.strip():
            raise InputError("ssh username is required")
        return validate_local_port(local_port)

    def load_certificate(
        self, p12_path: Union[str, Path, None], password: str
    ) -> CertificateBundle:
        """Decode the bundle and log its details, as shown in the activity log."""
        if not p12_path:
            raise InputError("no P12 file selected")
        if not password:
            raise InputError("certificate password required")
        bundle = load_certificate_bundle(p12_path, password)
        self.logger.info("Certificate Loaded:")
        self.logger.info("  Subject: %s", bundle.subject)
        self.logger.info("  Issuer: %s", bundle.issuer)
        self.logger.info("  Serial: %s", bundle.serial_number)
        self.logger.info("  Valid: %s to %s", bundle.not_before, bundle.not_after)
        if bundle.upn:
            self.logger.info("  UPN: %s", bundle.upn)
        return bundle

    @staticmethod
    def describe_certificate(bundle: CertificateBundle) -> str:
        message = f"Valid Cert (CN: {bundle.common_name}"
        if bundle.upn:
            message += f" | UPN: {bundle.upn}"
        return message + ")"

    # ------------------------------------------------------------------
    # Connection operations
    # ------------------------------------------------------------------
    def test_connection(
        self,
        host: str,
        username: str,
        local_port,
        p12_path: Union[str, Path, None],
        password: str,
    ) -> str:
        self.validate_inputs(host, username, local_port)
        bundle = self.load_certificate(p12_path, password)
        return auth.test_connection(
            host.strip(),
            username.strip(),
            bundle,
            client_cls=self.client_cls,
            timeout=self.options.connect_timeout,
            host_key_policy=self.options.host_key_policy,
            known_hosts_file=self.options.known_hosts_file,
        )

    def connect(
        self,
        host: str,
        username: str,
        local_port,
        p12_path: Union[str, Path, None],
        password: str,
    ) -> TunnelHandle:
        port = self.validate_inputs(host, username, local_port)
        bundle = self.load_certificate(p12_path, password)
        self.logger.info("Connecting to %s as %s via local port %d", host, username, port)
        return self.manager.connect(host.strip(), username.strip(), port, bundle)

    def disconnect(self) -> None:
        self.manager.disconnect()

    def wait(self, timeout: Optional[float] = None) -> Optional[SessionResult]:
        """Block until the current session has finished; see :meth:`TunnelManager.wait`."""
        return self.manager.wait(timeout)

    @property
    def status(self) -> TunnelState:
        return self.manager.status

    @property
    def is_active(self) -> bool:
        return self.manager.is_active

    # ------------------------------------------------------------------
    # Key export
    # ------------------------------------------------------------------
    def export_key(
        self,
        p12_path: Union[str, Path, None],
        password: str,
        destination: Union[str, Path],
        private: bool,
    ) -> Path:
        """Write the bundle's private (PEM) or public (OpenSSH) key to ``destination``."""
        bundle = self.load_certificate(p12_path, password)
        if private:
            data = export_private_key(bundle.private_key)
        else:
            data = export_public_key(bundle.private_key)
        return write_key_file(destination, data)
