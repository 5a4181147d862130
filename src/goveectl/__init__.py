"""Python API and CLI for controlling Govee lights through the cloud."""

from goveectl.client import Client
from goveectl.controller import Controller
from goveectl.credentials import AuthContext, CertificateBundle, CredentialStore
from goveectl.devices import Device, StateSnapshot
from goveectl.exceptions import AuthError, ConfigError, GoveeError, TransportError, VendorError
from goveectl.state import Reconciler

__all__ = [
    "AuthContext",
    "AuthError",
    "CertificateBundle",
    "Client",
    "ConfigError",
    "Controller",
    "CredentialStore",
    "Device",
    "GoveeError",
    "Reconciler",
    "StateSnapshot",
    "TransportError",
    "VendorError",
]
