"""Typed errors raised by vendor adapters, sagas and the server lifecycle.

Remote errors are classified once by the adapter that saw them and carry a
``kind``. Callers decide on backoff themselves: ``retryable`` only says
whether another attempt could succeed.
"""

RETRYABLE_KINDS = frozenset({"rate_limited", "server_error", "timeout", "network_error"})


class ProviderError(Exception):
    """Error reported by (or while talking to) a vendor API.

    :param kind: Error classification, e.g. ``unauthorized`` or ``record_conflict``
    :param message: Vendor message or extra detail
    :param code: Vendor error code or HTTP status, when known
    :param service: Display name of the vendor, defaults to the class' service
    """

    service = "Provider"

    DESCRIPTIONS = {
        "unauthorized": "Failed to authenticate with {service}",
        "forbidden": "Access to {service} was denied",
        "not_found": "Resource not found on {service}",
        "rate_limited": "Too many requests to {service}",
        "server_error": "{service} server error (code: {code})",
        "network_error": "Network connection error",
        "timeout": "Request to {service} timed out",
        "api_error": "{message}",
        "invalid_response": "Invalid response from {service}",
        "unprocessable": "{service} rejected the request: {message}",
        "validation": "Validation error: {message}",
    }

    REASONS = {
        "unauthorized": "Your {service} credentials are incorrect.",
        "forbidden": "These credentials lack the permission for this operation.",
        "rate_limited": "You've made too many requests in a short time.",
        "server_error": "{service}'s servers are experiencing issues.",
        "network_error": "{message}",
        "timeout": "The connection to {service} took too long.",
        "api_error": "{service} API error code: {code}",
        "invalid_response": "The response from {service} was not in the expected format.",
    }

    RECOVERY = {
        "unauthorized": "Check your {service} credentials, then try again.",
        "forbidden": "Grant the token the required permissions, then try again.",
        "rate_limited": "Wait a few minutes before trying again.",
        "server_error": "Try again in a few minutes. If the problem persists, check {service}'s status page.",
        "network_error": "Check your internet connection and try again.",
        "timeout": "Check your internet connection and try again.",
        "api_error": "If this error persists, contact {service} support.",
        "invalid_response": "Try again. If the problem persists, contact support.",
    }

    def __init__(
        self,
        kind: str,
        message: str | None = None,
        *,
        code: int | str | None = None,
        service: str | None = None,
    ):
        self.kind = kind
        self.message = message or ""
        self.code = code
        if service is not None:
            self.service = service
        super().__init__(self.description)

    def _format(self, template: str | None) -> str | None:
        if template is None:
            return None
        return template.format(service=self.service, message=self.message, code=self.code)

    @property
    def description(self) -> str:
        text = self._format(self.DESCRIPTIONS.get(self.kind))
        if text:
            return text
        return self.message or self.kind.replace("_", " ").capitalize()

    @property
    def failure_reason(self) -> str | None:
        return self._format(self.REASONS.get(self.kind))

    @property
    def recovery_suggestion(self) -> str | None:
        return self._format(self.RECOVERY.get(self.kind))

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


def should_retry(err: Exception) -> bool:
    """Pure retry-eligibility check, usable on any exception."""
    return isinstance(err, ProviderError) and err.retryable


class CloudflareError(ProviderError):
    service = "Cloudflare"

    DESCRIPTIONS = {
        **ProviderError.DESCRIPTIONS,
        "no_account_found": "No Cloudflare account found",
        "record_conflict": "DNS record conflict: {message}",
        "invalid_record_type": "Invalid DNS record type: {message}",
        "dnssec_error": "DNSSEC error: {message}",
        "zone_locked": "Zone is locked: {message}",
    }

    REASONS = {
        **ProviderError.REASONS,
        "unauthorized": "Your Cloudflare email or API key is incorrect.",
        "no_account_found": "No account is associated with these credentials.",
        "record_conflict": "{message}",
        "invalid_record_type": "{message}",
        "dnssec_error": "{message}",
        "zone_locked": "{message}",
    }

    RECOVERY = {
        **ProviderError.RECOVERY,
        "unauthorized": "Check your Cloudflare email and API key in Settings, then try again.",
        "no_account_found": "Verify that you're using a Global API Key, not an API Token.",
        "record_conflict": "Delete or modify the conflicting DNS record before creating this one.",
        "invalid_record_type": "Check that you're using a valid DNS record type (A, AAAA, CNAME, etc.).",
        "dnssec_error": "Check your DNSSEC configuration in the Cloudflare dashboard.",
        "zone_locked": "Wait for the zone to be unlocked or contact Cloudflare support.",
    }


class DNSError(ProviderError):
    """Error from a DNS-only vendor: Hetzner DNS, DigitalOcean, Vultr, Linode, Bunny."""

    service = "DNS provider"

    DESCRIPTIONS = {
        **ProviderError.DESCRIPTIONS,
        "unsupported_record_type": "Unsupported DNS record type: {message}",
    }


class CloudProviderError(ProviderError):
    service = "VPS provider"

    DESCRIPTIONS = {
        **ProviderError.DESCRIPTIONS,
        "invalid_credentials": "Invalid or missing credentials",
        "invalid_parameters": "Invalid parameters provided",
        "unsupported_provider": "Provider '{message}' is not supported for server creation",
        "server_creation_failed": "Server creation failed: {message}",
        "server_not_found": "Server not found: {message}",
        "timeout": "Operation timed out: {message}",
        "network_error": "Network error: {message}",
    }


class ScalewayError(ProviderError):
    service = "Scaleway"

    DESCRIPTIONS = {
        **ProviderError.DESCRIPTIONS,
        "invalid_credentials": "Invalid Scaleway credentials",
        "invalid_region": "Invalid Scaleway region",
        "bucket_not_found": "Bucket not found",
        "bucket_already_exists": "Bucket already exists",
        "access_denied": "Access denied",
        "request_failed": "Request failed ({code}): {message}",
    }

    RECOVERY = {
        **ProviderError.RECOVERY,
        "access_denied": "Check that the Scaleway API key has Object Storage permissions.",
        "bucket_already_exists": "Bucket names are global, choose another name.",
    }


class GitHubError(ProviderError):
    service = "GitHub"

    RECOVERY = {
        **ProviderError.RECOVERY,
        "unauthorized": "Create a new GitHub personal access token and try again.",
    }


class DropboxError(ProviderError):
    service = "Dropbox"

    DESCRIPTIONS = {
        **ProviderError.DESCRIPTIONS,
        "invalid_credentials": "Invalid Dropbox app key, secret or authorization code",
        "token_expired": "Dropbox refresh token is no longer valid",
    }

    RECOVERY = {
        **ProviderError.RECOVERY,
        "invalid_credentials": "Check the app key and secret, then authorize again.",
        "token_expired": "Authorize the Dropbox app again to obtain a new refresh token.",
    }


class ValidationError(ValueError):
    """Local format check failed before any remote call was made."""

    def __init__(self, field: str, message: str, recovery_suggestion: str | None = None):
        self.field = field
        self.message = message
        self.recovery_suggestion = recovery_suggestion
        super().__init__(message)

    @property
    def description(self) -> str:
        return self.message


class ServerLifecycleError(Exception):
    """Base for errors raised by the server lifecycle coordinator."""

    DESCRIPTIONS: dict[str, str] = {"not_found": "Record not found: {details}"}
    RECOVERY: dict[str, str] = {}

    def __init__(self, kind: str, details: str = ""):
        self.kind = kind
        self.details = details
        super().__init__(self.description)

    @property
    def description(self) -> str:
        template = self.DESCRIPTIONS.get(self.kind, "{details}")
        return template.format(details=self.details)

    @property
    def recovery_suggestion(self) -> str | None:
        return self.RECOVERY.get(self.kind)


class InvalidTransitionError(ServerLifecycleError):
    DESCRIPTIONS = {"invalid_transition": "Invalid server status transition: {details}"}

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__("invalid_transition", f"'{current}' -> '{target}'")


class ServerCreationError(ServerLifecycleError):
    DESCRIPTIONS = {
        "missing_api_token": "Missing API token for provider",
        "duplicate_server_name": "A server with this name already exists",
        "connection_failed": "Could not connect to server: {details}",
    }


class ServerDeletionError(ServerLifecycleError):
    DESCRIPTIONS = {
        "cloudflare_failed": "Failed to delete Cloudflare tunnel: {details}",
        "provider_failed": "Failed to delete server from provider: {details}",
        "network_error": "Network error: {details}",
        "unauthorized": "Authentication failed for {details}. Please check your credentials.",
        "unknown": "An unexpected error occurred: {details}",
    }

    RECOVERY = {
        "cloudflare_failed": (
            "The tunnel remains listed under 'deployinfra tunnel list' for manual cleanup. "
            "You can delete the server anyway with --force or retry after checking your API credentials."
        ),
        "provider_failed": (
            "Check your provider API token and try again. The server may need to be "
            "deleted manually from the provider's control panel."
        ),
        "network_error": "Check your internet connection and try again.",
        "unauthorized": "Update your API credentials in the provider settings and try again.",
        "unknown": "Try again or contact support if the problem persists.",
    }


class ProvisioningError(ServerLifecycleError):
    DESCRIPTIONS = {
        "playbook_not_found": "Playbook not found: {details}",
        "execution_failed": "Configuration run failed: {details}",
        "unsupported_architecture": "Unsupported server architecture: {details}",
        "ssh_unreachable": "Server is not reachable over SSH: {details}",
        "tunnel_unreachable": "Server is not reachable through the tunnel: {details}",
        "incomplete_config": "Server configuration is incomplete: {details}",
    }

    RECOVERY = {
        "playbook_not_found": "Set DEPLOYINFRA_PLAYBOOK_DIR to the directory holding the playbooks.",
        "execution_failed": "Check the log output above, fix the cause and run 'deployinfra server retry'.",
        "ssh_unreachable": "Check the host, port and firewall, then run 'deployinfra server retry'.",
    }
