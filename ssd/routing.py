"""
Traefik routing labels.

Translates a service's domain, path and HTTPS settings into the docker labels
Traefik reads from the docker provider. Alias domains get redirect routers
pointing at the primary domain.
"""

from typing import List

from ssd.config.settings import ServiceConfig

CERT_RESOLVER = "letsencrypt"
REDIRECT_TO_HTTPS = "redirect-to-https"

# Label fragments that let Traefik run its own health checks against an upstream
HEALTHCHECK_LABEL_MARKER = ".loadbalancer.healthcheck."


def router_name(project: str, service: str) -> str:
    return f"{project}-{service}"


def generate_labels(service: ServiceConfig) -> List[str]:
    """
    Build the full Traefik label list for a service.

    Args:
        service: Resolved service descriptor

    Returns:
        Labels in ``key=value`` form; empty when the service has no domain
    """
    primary = service.primary_domain
    if not primary:
        return []

    labels = _primary_domain_labels(service, primary)
    for alias in service.alias_domains:
        labels.extend(_alias_redirect_labels(service, alias, primary))
    return labels


def strip_healthcheck_labels(labels: List[str]) -> List[str]:
    """Drop load-balancer health-check labels (used for canary entries)."""
    return [label for label in labels if HEALTHCHECK_LABEL_MARKER not in label]


def _router_middlewares(router: str, middlewares: str) -> str:
    return f"traefik.http.routers.{router}.middlewares={middlewares}"


def _primary_domain_labels(service: ServiceConfig, domain: str) -> List[str]:
    router = router_name(service.project, service.name)

    # "/" routes everything, same as no path
    sub_path = service.path if service.path and service.path != "/" else None

    rule = f"Host(`{domain}`)"
    if sub_path:
        rule = f"Host(`{domain}`) && PathPrefix(`{sub_path}`)"

    labels = [
        "traefik.enable=true",
        f"traefik.http.routers.{router}.rule={rule}",
        f"traefik.http.services.{router}.loadbalancer.server.port={service.port}",
    ]

    strip = None
    if sub_path:
        strip = f"{router}-strip"
        labels.append(f"traefik.http.middlewares.{strip}.stripprefix.prefixes={sub_path}")

    if service.https:
        if strip:
            labels.append(_router_middlewares(router, strip))
        labels.extend(
            [
                f"traefik.http.routers.{router}.entrypoints=websecure",
                f"traefik.http.routers.{router}.tls=true",
                f"traefik.http.routers.{router}.tls.certresolver={CERT_RESOLVER}",
            ]
        )

        http_router = f"{router}-http"
        http_middlewares = f"{strip},{REDIRECT_TO_HTTPS}" if strip else REDIRECT_TO_HTTPS
        labels.extend(
            [
                f"traefik.http.routers.{http_router}.rule={rule}",
                f"traefik.http.routers.{http_router}.entrypoints=web",
                _router_middlewares(http_router, http_middlewares),
                f"traefik.http.middlewares.{REDIRECT_TO_HTTPS}.redirectscheme.scheme=https",
            ]
        )
    else:
        if strip:
            labels.append(_router_middlewares(router, strip))
        labels.append(f"traefik.http.routers.{router}.entrypoints=web")

    return labels


def _alias_redirect_labels(service: ServiceConfig, alias: str, primary: str) -> List[str]:
    sanitized = alias.replace(".", "-")
    router = f"{service.project}-{service.name}-alias-{sanitized}"
    middleware = f"{service.project}-{service.name}-redirect-{sanitized}"
    scheme = "https" if service.https else "http"
    escaped_alias = alias.replace(".", "\\.")

    # $$ survives compose variable interpolation as a literal $
    labels = [
        f"traefik.http.routers.{router}.rule=Host(`{alias}`)",
        _router_middlewares(router, middleware),
        f"traefik.http.middlewares.{middleware}.redirectregex.regex=^{scheme}://{escaped_alias}/(.*)",
        f"traefik.http.middlewares.{middleware}.redirectregex.replacement={scheme}://{primary}/$${{1}}",
        f"traefik.http.middlewares.{middleware}.redirectregex.permanent=false",
    ]

    if service.https:
        http_router = f"{router}-http"
        labels.extend(
            [
                f"traefik.http.routers.{router}.entrypoints=websecure",
                f"traefik.http.routers.{router}.tls=true",
                f"traefik.http.routers.{router}.tls.certresolver={CERT_RESOLVER}",
                f"traefik.http.routers.{http_router}.rule=Host(`{alias}`)",
                f"traefik.http.routers.{http_router}.entrypoints=web",
                _router_middlewares(http_router, REDIRECT_TO_HTTPS),
            ]
        )
    else:
        labels.append(f"traefik.http.routers.{router}.entrypoints=web")

    return labels
