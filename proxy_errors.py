# Error taxonomy for the forwarder.
# reply_code is the SOCKS5 REP byte sent to the client before closing,
# None means close silently.

REP_GENERAL_FAILURE = 0x01
REP_COMMAND_NOT_SUPPORTED = 0x07
REP_ADDRESS_TYPE_NOT_SUPPORTED = 0x08


class ForwarderError(Exception):
    reply_code = REP_GENERAL_FAILURE


class StartupTimeout(ForwarderError):
    """Upstream never accepted a connection; fatal for the process."""


class HandshakeError(ForwarderError):
    pass


class UnsupportedVersion(HandshakeError):
    # the peer is not speaking SOCKS5, so a SOCKS5 reply means nothing to it
    reply_code = None


class UnsupportedCommand(HandshakeError):
    reply_code = REP_COMMAND_NOT_SUPPORTED


class UnsupportedAddressType(HandshakeError):
    reply_code = REP_ADDRESS_TYPE_NOT_SUPPORTED


class MalformedRequest(HandshakeError):
    pass


class UpstreamConnectFailed(ForwarderError):
    def __init__(self, message, reply_code=REP_GENERAL_FAILURE):
        super().__init__(message)
        self.reply_code = reply_code


class RelayIOError(ForwarderError):
    pass


class ConfigError(ValueError):
    pass
