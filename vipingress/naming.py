"""Hostname and Service Name derivation for Ingresses."""

from typing import Dict, Tuple

from .store import name_of, namespace_of

SERVICE_NAME_PREFIX = "svc:"


def requested_host(ingress: Dict) -> str:
    """Host asked for by the Ingress.

    The single TLS host when there is one, ``<namespace>-<name>`` for an
    Ingress without a TLS block. Assumes the TLS shape has been validated.
    """
    tls = (ingress.get("spec") or {}).get("tls") or []
    if not tls:
        return f"{namespace_of(ingress)}-{name_of(ingress)}"
    return tls[0]["hosts"][0]


def leftmost_label(host: str) -> str:
    return host.split(".", 1)[0]


def hostname_for(host: str, dns_suffix: str) -> str:
    """Fully qualified tailnet hostname for ``host``.

    Only the leftmost label of ``host`` is kept, so a name that is already
    qualified under the suffix comes back unchanged.
    """
    return f"{leftmost_label(host)}.{dns_suffix.strip('.')}"


def service_name_for(hostname: str) -> str:
    return SERVICE_NAME_PREFIX + leftmost_label(hostname)


def hostname_for_service(service_name: str, dns_suffix: str) -> str:
    return hostname_for(service_name[len(SERVICE_NAME_PREFIX):], dns_suffix)


def resolve(ingress: Dict, dns_suffix: str) -> Tuple[str, str]:
    """Return (hostname, service name) for a validated Ingress."""
    hostname = hostname_for(requested_host(ingress), dns_suffix)
    return hostname, service_name_for(hostname)
