"""Exception hierarchy for the address space and liveness engine.

Every error carries the HTTP status it maps to and a short machine code;
``ipam.main`` installs one handler that renders them as JSON.
"""


class IpamError(Exception):
    """Base exception for all IPAM errors."""

    status_code = 500
    code = "ipam_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidCidr(IpamError):
    """Malformed or degenerate CIDR block."""

    status_code = 400
    code = "InvalidCidr"


class InvalidAddress(IpamError):
    """Malformed IPv4 address, or one outside the segment's usable range."""

    status_code = 400
    code = "InvalidAddress"


class SegmentTooLarge(IpamError):
    status_code = 400
    code = "SegmentTooLarge"


class SegmentOverlap(IpamError):
    status_code = 409
    code = "SegmentOverlap"


class SegmentInUse(IpamError):
    status_code = 409
    code = "SegmentInUse"


class SegmentNotFound(IpamError):
    status_code = 404
    code = "SegmentNotFound"

    def __init__(self, segment_id):
        self.segment_id = segment_id
        super().__init__(f"Network segment {segment_id} not found")


class AddressNotFound(IpamError):
    status_code = 404
    code = "AddressNotFound"

    def __init__(self, ref):
        self.ref = ref
        super().__init__(f"IP address {ref} not found")


class AddressStateError(IpamError):
    """Requested status transition is not allowed from the current status."""

    status_code = 409
    code = "AddressStateError"


class ProbeTransportError(Exception):
    """A single probe could not be sent or read.

    Absorbed by the probe executor as ``alive=False``. ``systemic`` marks
    failures that would hit every host alike (no ping binary, no privilege).
    """

    def __init__(self, message: str, systemic: bool = False):
        self.systemic = systemic
        super().__init__(message)


class ProbeConfigurationError(IpamError):
    """Probes cannot be sent at all (missing ping binary, no privilege)."""

    status_code = 503
    code = "ProbeConfigurationError"


class CacheWriteFailure(IpamError):
    """A scan cycle's results could not be persisted."""

    status_code = 503
    code = "CacheWriteFailure"


class SweepInProgress(IpamError):
    status_code = 409
    code = "SweepInProgress"
