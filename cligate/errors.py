class GatewayError(Exception):
    """Base class for request rejections raised before any process is spawned."""

    status_code = 500


class MalformedInput(GatewayError):
    status_code = 400


class BadRequest(GatewayError):
    status_code = 400


class PolicyDenied(GatewayError):
    status_code = 403


class ConfigError(GatewayError):
    status_code = 500
