"""Exception hierarchy shared by the certificate, SSH and tunnel layers.

Errors are grouped by the stage that detects them so the service and UI
layers can decide how to present a failure without inspecting messages:

* :class:`InputError` - missing or malformed user input, raised before any
  file or network access.
* :class:`CertificateError` - the certificate bundle could not be used.
* :class:`AuthError` - the signer could not be built or the server rejected
  the session.
* :class:`NetworkError` - dialing, listening, forwarding or keepalive failed.
* :class:`ProcessError` - the RDP viewer could not be launched or failed.
* :class:`CancellationError` - the session ended because the user asked.
"""


class RdpSshError(Exception):
    """Base class for all application errors."""


class InputError(RdpSshError, ValueError):
    """Invalid host, user or port supplied by the caller."""


class CertificateError(RdpSshError):
    """Certificate bundle could not be read or used."""


class FileReadError(CertificateError):
    pass


class DecodeError(CertificateError):
    pass


class MissingKeyError(CertificateError):
    pass


class MissingCertError(CertificateError):
    pass


class UnsupportedKeyType(CertificateError):
    """Private key is neither RSA nor ECDSA on an SSH capable curve."""


class AuthError(RdpSshError):
    pass


class NetworkError(RdpSshError):
    pass


class DialError(NetworkError):
    pass


class ListenError(NetworkError):
    pass


class ForwardError(NetworkError):
    pass


class KeepaliveError(NetworkError):
    pass


class ProcessError(RdpSshError):
    pass


class CancellationError(RdpSshError):
    """Session was closed on request; not a failure."""
