"""
Artifact verification for fleetpkg.

This package holds the integrity verifiers (checksum, signature, malware
scan) and the gate chain that runs them in a fixed order.

Modules
-------
checksum : module
    SHA-256 streaming hash and comparison.
signature : module
    Authenticode inspection via PowerShell and signer/thumbprint checks.
scanner : module
    Custom command-line scanner with Windows Defender fallback.
gates : module
    GateChain: source, checksum, signature, malware scan.
"""

from .checksum import sha256_file, verify_checksum
from .gates import GateChain, GateReport
from .scanner import MalwareScanner, ProcessScanner, ScanResult, ScanStatus
from .signature import (
    PowerShellSignatureInspector,
    SignatureInspection,
    SignatureInspector,
    SignatureStatus,
    check_signature,
)

__all__ = [
    "GateChain",
    "GateReport",
    "MalwareScanner",
    "PowerShellSignatureInspector",
    "ProcessScanner",
    "ScanResult",
    "ScanStatus",
    "SignatureInspection",
    "SignatureInspector",
    "SignatureStatus",
    "check_signature",
    "sha256_file",
    "verify_checksum",
]
