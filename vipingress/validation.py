"""Precondition checks for Ingresses served by a ProxyGroup.

Everything in here is pure: no store access, no side effects. The reconciler
runs :func:`validate_ingress` on every pass.
"""

import re
from typing import Dict, Iterable, List, Optional

from .errors import IngressValidationError
from .models import (
    ANNOTATION_PROXY_GROUP,
    ANNOTATION_SERVICE_NAME,
    ANNOTATION_TAGS,
    FINALIZER,
    PROXY_GROUP_READY,
    PROXY_GROUP_TYPE_INGRESS,
)
from .naming import requested_host, service_name_for
from .store import annotations_of, is_deleting, name_of, namespace_of

TAG_PREFIX = "tag:"
_TAG_NAME = re.compile(r"^[A-Za-z0-9-]+$")


def parse_tags(ingress: Dict) -> Optional[List[str]]:
    """Tags from the tags annotation, None when the annotation is unset."""
    raw = annotations_of(ingress).get(ANNOTATION_TAGS)
    if raw is None:
        return None
    return [tag.strip() for tag in raw.split(",") if tag.strip()]


def check_tag(tag: str) -> Optional[str]:
    """Return why ``tag`` is invalid, or None."""
    if not tag.startswith(TAG_PREFIX):
        return "tags must start with 'tag:'"
    name = tag[len(TAG_PREFIX):]
    if not name:
        return "tag names must not be empty"
    if not name[0].isalpha():
        return "tag names must start with a letter, after 'tag:'"
    if not _TAG_NAME.match(name):
        return "tag names can only contain numbers, letters, or dashes"
    return None


def validate_tags(ingress: Dict) -> None:
    for tag in parse_tags(ingress) or []:
        problem = check_tag(tag)
        if problem:
            raise IngressValidationError(
                f'{ANNOTATION_TAGS} annotation contains invalid tag "{tag}": {problem}'
            )


def validate_tls(ingress: Dict) -> None:
    tls = (ingress.get("spec") or {}).get("tls")
    if not tls:
        return
    if len(tls) != 1 or len(tls[0].get("hosts") or []) != 1:
        blocks = [list(entry.get("hosts") or []) for entry in tls]
        raise IngressValidationError(
            f"Ingress contains invalid TLS block {blocks}: "
            "only a single TLS entry with a single host is allowed"
        )


def proxy_group_ready(proxy_group: Dict) -> bool:
    """ProxyGroupReady condition is True for the current generation."""
    generation = (proxy_group.get("metadata") or {}).get("generation")
    for cond in (proxy_group.get("status") or {}).get("conditions") or []:
        if cond.get("type") == PROXY_GROUP_READY:
            return cond.get("status") == "True" and cond.get("observedGeneration") == generation
    return False


def validate_proxy_group(pg_name: str, proxy_group: Optional[Dict]) -> None:
    reason = IngressValidationError.REASON_PROXY_GROUP
    if proxy_group is None:
        raise IngressValidationError(f'ProxyGroup "{pg_name}" does not exist', reason)
    pg_type = (proxy_group.get("spec") or {}).get("type")
    if pg_type != PROXY_GROUP_TYPE_INGRESS:
        raise IngressValidationError(
            f'ProxyGroup "{pg_name}" is of type "{pg_type}" but must be of type "{PROXY_GROUP_TYPE_INGRESS}"',
            reason,
        )
    if not proxy_group_ready(proxy_group):
        raise IngressValidationError(f'ProxyGroup "{pg_name}" is not ready', reason)


def is_well_formed(ingress: Dict) -> bool:
    """Ingress-level checks only: tags and TLS shape."""
    try:
        validate_tags(ingress)
        validate_tls(ingress)
    except IngressValidationError:
        return False
    return True


def _age_key(ingress: Dict):
    created = (ingress.get("metadata") or {}).get("creationTimestamp") or ""
    return (created, namespace_of(ingress) or "", name_of(ingress))


def _same_object(a: Dict, b: Dict) -> bool:
    uid_a = (a.get("metadata") or {}).get("uid")
    uid_b = (b.get("metadata") or {}).get("uid")
    if uid_a and uid_b:
        return uid_a == uid_b
    return namespace_of(a) == namespace_of(b) and name_of(a) == name_of(b)


def holds_service_name(ingress: Dict, service_name: str) -> bool:
    """The Ingress is provisioned under ``service_name``."""
    finalizers = (ingress.get("metadata") or {}).get("finalizers") or []
    return FINALIZER in finalizers and annotations_of(ingress).get(ANNOTATION_SERVICE_NAME) == service_name


def find_duplicate(ingress: Dict, siblings: Iterable[Dict]) -> Optional[Dict]:
    """Live sibling with a better claim on the Service Name of ``ingress``.

    A sibling already provisioned under the name beats one that is not.
    Between equal claims the earlier created wins, ties broken by namespace/name.
    """
    service_name = service_name_for(requested_host(ingress))
    mine = holds_service_name(ingress, service_name)
    conflicts = []
    for other in siblings:
        if _same_object(ingress, other) or is_deleting(other):
            continue
        if ANNOTATION_PROXY_GROUP not in annotations_of(other) or not is_well_formed(other):
            continue
        if service_name_for(requested_host(other)) != service_name:
            continue
        theirs = holds_service_name(other, service_name)
        if (theirs and not mine) or (theirs == mine and _age_key(other) < _age_key(ingress)):
            conflicts.append(other)
    if not conflicts:
        return None
    return min(conflicts, key=lambda other: (not holds_service_name(other, service_name), _age_key(other)))


def validate_ingress(ingress: Dict, proxy_group: Optional[Dict], siblings: Iterable[Dict]) -> None:
    """Raise IngressValidationError for the first failed check."""
    pg_name = annotations_of(ingress).get(ANNOTATION_PROXY_GROUP, "")
    if proxy_group is not None:
        pg_name = name_of(proxy_group) or pg_name
    validate_proxy_group(pg_name, proxy_group)
    validate_tags(ingress)
    validate_tls(ingress)

    duplicate = find_duplicate(ingress, siblings)
    if duplicate is not None:
        who = name_of(duplicate)
        if namespace_of(duplicate) != namespace_of(ingress):
            who = f"{namespace_of(duplicate)}/{who}"
        raise IngressValidationError(
            f'found duplicate Ingress "{who}" for hostname "{requested_host(ingress)}" - '
            "multiple Ingresses for the same hostname in the same cluster are not allowed"
        )
