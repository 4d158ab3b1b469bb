"""Request resolver: placeholders, base URL, query params and auth.

Turns a RequestTemplate plus a variable context into a RequestSpec that can be
sent as-is. Placeholder resolution is best effort: a {{name}} with no value is
left verbatim so the user can see what failed to resolve.
"""

from __future__ import annotations

import dataclasses
import random
import re
import time
from urllib.parse import urlencode, urlparse

from .exceptions import ConfigurationError
from .logging_config import get_logger
from .models import (
    AuthDescriptor,
    AuthType,
    BodyContentType,
    Environment,
    RequestSpec,
    RequestTemplate,
)

logger = get_logger("resolver")

# Variable syntax: {{variableName}}
VAR_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
ALLOWED_SCHEMES = frozenset({"http", "https"})
# Methods that carry a request body; others are sent without one.
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
CONTENT_TYPES = {
    BodyContentType.JSON: "application/json",
    BodyContentType.FORM: "application/x-www-form-urlencoded",
    BodyContentType.RAW: "text/plain",
}
CACHE_BUSTER_PARAM = "nocache"


def resolve_vars(text: str, variables: dict[str, str]) -> str:
    """Replace {{variableName}} with values from variables. Unknown names stay verbatim."""
    if "{{" not in text:
        return text

    def repl(match: re.Match[str]) -> str:
        key = match.group(1).strip()
        value = variables.get(key)
        return match.group(0) if value is None else str(value)

    return VAR_PATTERN.sub(repl, text)


def unresolved_placeholders(spec: RequestSpec) -> set[str]:
    """Names of {{placeholders}} still present anywhere in a resolved spec."""
    texts = [spec.url, spec.body, *spec.headers.keys(), *spec.headers.values()]
    return {m.group(1).strip() for t in texts for m in VAR_PATTERN.finditer(t)}


def _validate_absolute(url: str, what: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ALLOWED_SCHEMES or not parsed.netloc:
        raise ConfigurationError(f"Invalid {what}: {url!r}", context={what.replace(" ", "_"): url})


def absolute_url(url: str, base_url: str = "") -> str:
    """Prefix relative URLs (starting with '/') with base_url; validate the result."""
    url = url.strip()
    if not url:
        raise ConfigurationError("URL must not be empty")
    if url.startswith("/"):
        base = base_url.strip()
        if not base:
            raise ConfigurationError(
                "Relative URL requires an environment base URL", context={"url": url}
            )
        _validate_absolute(base, "base URL")
        return base.rstrip("/") + url
    _validate_absolute(url, "URL")
    return url


def apply_query_params(url: str, params: list[tuple[str, str]]) -> str:
    """Append non-empty-key params (URL-encoded) after any query already in url."""
    pairs = [(k, v) for k, v in params if k]
    if not pairs:
        return url
    encoded = urlencode(pairs)
    if "?" not in url:
        return f"{url}?{encoded}"
    if url.endswith(("?", "&")):
        return url + encoded
    return f"{url}&{encoded}"


def auth_headers(auth: AuthDescriptor) -> tuple[dict[str, str], tuple[str, str] | None]:
    """Headers (and basic credentials pair) for an auth descriptor.

    Basic auth is returned as a credentials pair; the executor hands it to the
    HTTP client, which builds the Authorization header.
    """
    if auth.type == AuthType.NONE:
        return {}, None
    if auth.type == AuthType.BASIC:
        if not auth.username:
            raise ConfigurationError("Basic auth requires a username")
        return {}, (auth.username, auth.password)
    if auth.type == AuthType.BEARER:
        if not auth.token:
            raise ConfigurationError("Bearer auth requires a token")
        return {"Authorization": f"Bearer {auth.token}"}, None
    if auth.type == AuthType.APIKEY:
        if not auth.key_name or not auth.key_value:
            raise ConfigurationError("API key auth requires keyName and keyValue")
        return {auth.key_name: auth.key_value}, None
    raise ConfigurationError(f"Unsupported auth type: {auth.type!r}")


def _resolve_auth(auth: AuthDescriptor, variables: dict[str, str]) -> AuthDescriptor:
    return dataclasses.replace(
        auth,
        username=resolve_vars(auth.username, variables),
        password=resolve_vars(auth.password, variables),
        token=resolve_vars(auth.token, variables),
        key_name=resolve_vars(auth.key_name, variables),
        key_value=resolve_vars(auth.key_value, variables),
    )


def resolve(
    template: RequestTemplate,
    variables: dict[str, str] | None = None,
    environment: Environment | None = None,
) -> RequestSpec:
    """Produce a sendable RequestSpec.

    Variable precedence: environment variables, then `variables` (later wins).
    Header keys are case-preserved; duplicate keys resolve last-write-wins, and
    auth headers are written last.

    Raises:
        ConfigurationError: malformed URL/base URL or incomplete auth config
    """
    env = environment or Environment()
    context: dict[str, str] = {**env.variables, **(variables or {})}

    url = absolute_url(resolve_vars(template.url, context), resolve_vars(env.base_url, context))
    params = [
        (resolve_vars(k, context), resolve_vars(v, context))
        for k, v in template.query_params
    ]
    url = apply_query_params(url, params)

    headers: dict[str, str] = {}
    for key, value in template.headers.items():
        key = resolve_vars(key, context).strip()
        if key:
            headers[key] = resolve_vars(value, context)

    extra, basic = auth_headers(_resolve_auth(template.auth, context))
    headers.update(extra)

    method = (template.method or "GET").strip().upper()
    body = resolve_vars(template.body, context) if method in BODY_METHODS else ""
    content_type = CONTENT_TYPES.get(template.body_content_type)
    if body and content_type and "content-type" not in {k.lower() for k in headers}:
        headers["Content-Type"] = content_type

    spec = RequestSpec(
        url=url,
        method=method,
        headers=headers,
        body=body,
        body_content_type=template.body_content_type,
        basic_auth=basic,
    )
    missing = unresolved_placeholders(spec)
    if missing:
        logger.warning("Unresolved placeholders left verbatim: %s", ", ".join(sorted(missing)))
    return spec


def with_cache_buster(spec: RequestSpec, index: int) -> RequestSpec:
    """Copy of spec with a unique nocache query param so caches are bypassed."""
    token = f"{int(time.time())}-{random.randint(1000, 9999)}-{index}"
    return dataclasses.replace(spec, url=apply_query_params(spec.url, [(CACHE_BUSTER_PARAM, token)]))
