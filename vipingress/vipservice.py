"""Lifecycle of VIP service records shared between operators.

A record may be referenced by operators in several clusters. Each operator
only ever adds or removes its own owner reference; the record is deleted by
whichever operator removes the last one.
"""

from typing import List, Optional

from .errors import IngressValidationError, NotFoundError
from .logging_config import get_logger
from .models import OWNER_ANNOTATION, VIP_SERVICE_COMMENT, OwnerAnnotation, OwnerRef, VIPService

logger = get_logger(__name__)


class VIPServiceManager:
    """Claims and releases VIP service records in the tailnet directory."""

    def __init__(self, directory, operator_id: str):
        self.directory = directory
        self.operator_id = operator_id

    def get(self, name: str) -> VIPService:
        """Fetch a record, raising NotFoundError when it does not exist."""
        return self.directory.get_vip_service(name)

    def _get_or_none(self, name: str) -> Optional[VIPService]:
        try:
            return self.get(name)
        except NotFoundError:
            return None

    def _check_adoptable(self, svc: VIPService, owners: Optional[OwnerAnnotation]) -> None:
        if owners is None:
            raise IngressValidationError(
                f'VIP service "{svc.name}" already exists and is not owned by any operator; '
                "delete it or pick another hostname"
            )
        for ref in owners.owner_refs:
            if ref.resource is not None and ref.resource.kind != "Ingress":
                raise IngressValidationError(
                    f'VIP service "{svc.name}" is owned by {ref.resource.kind} '
                    f'"{ref.resource.name}" and cannot be exposed by an Ingress'
                )

    def upsert(self, name: str, tags: List[str], ports: List[str]) -> bool:
        """Create or update a record and claim it for this operator.

        Tags and ports are replaced wholesale. Returns True if a write happened.
        """
        existing = self._get_or_none(name)

        if existing is None:
            owners = OwnerAnnotation(owner_refs=[OwnerRef(operator_id=self.operator_id)])
            svc = VIPService(
                name=name,
                comment=VIP_SERVICE_COMMENT,
                annotations={OWNER_ANNOTATION: owners.to_annotation()},
                ports=list(ports),
                tags=sorted(tags),
            )
            self.directory.create_or_update_vip_service(svc)
            logger.info("Created VIP service", service=name, ports=ports, tags=svc.tags)
            return True

        owners = OwnerAnnotation.from_annotations(existing.annotations)
        self._check_adoptable(existing, owners)
        if self.operator_id not in owners.operator_ids():
            owners.owner_refs.append(OwnerRef(operator_id=self.operator_id))

        annotations = dict(existing.annotations)
        annotations[OWNER_ANNOTATION] = owners.to_annotation()
        desired = existing.model_copy(update={
            "comment": VIP_SERVICE_COMMENT,
            "annotations": annotations,
            "ports": existing.ports if sorted(existing.ports) == sorted(ports) else list(ports),
            "tags": existing.tags if sorted(existing.tags) == sorted(tags) else sorted(tags),
        })
        if desired == existing:
            return False

        self.directory.create_or_update_vip_service(desired)
        logger.info("Updated VIP service",
                    service=name,
                    ports=desired.ports,
                    tags=desired.tags,
                    owners=owners.operator_ids())
        return True

    def release(self, name: str) -> bool:
        """Drop this operator's claim, deleting the record if nobody is left.

        Returns True if a write happened.
        """
        existing = self._get_or_none(name)
        if existing is None:
            return False
        owners = OwnerAnnotation.from_annotations(existing.annotations)
        if owners is None or self.operator_id not in owners.operator_ids():
            return False

        remaining = [ref for ref in owners.owner_refs if ref.operator_id != self.operator_id]
        if not remaining:
            try:
                self.directory.delete_vip_service(name)
            except NotFoundError:
                return False
            logger.info("Deleted VIP service", service=name)
            return True

        annotations = dict(existing.annotations)
        annotations[OWNER_ANNOTATION] = OwnerAnnotation(owner_refs=remaining).to_annotation()
        self.directory.create_or_update_vip_service(existing.model_copy(update={"annotations": annotations}))
        logger.info("Released VIP service ownership",
                    service=name,
                    remaining_owners=[ref.operator_id for ref in remaining])
        return True
