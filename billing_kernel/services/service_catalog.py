"""
ServiceCatalogService -- billable services and client price policies.

Responsibility:
    Register catalog services and attach date-scoped price policies to
    clients.  A policy's billing basis defaults from its service's billing
    unit (ORDER -> ORDER, BOX -> BOX, SKU -> QTY, anything else -> MANUAL).
"""

from datetime import date
from decimal import Decimal

from sqlalchemy import select

from billing_kernel.domain.dtos import PriceQuote, ServiceInfo
from billing_kernel.domain.money import to_decimal
from billing_kernel.domain.statuses import BillingBasis, BillingUnit, PricePolicyStatus, parse_enum
from billing_kernel.exceptions import (
    DuplicateServiceCodeError,
    ServiceNotFoundError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.pricing import PricePolicy, ServiceCatalog
from billing_kernel.services.base import BaseService, require_actor

logger = get_logger("services.service_catalog")


class ServiceCatalogService(BaseService):

    def _service_by_code(self, service_code: str) -> ServiceCatalog | None:
        return self.session.execute(
            select(ServiceCatalog).where(ServiceCatalog.service_code == service_code)
        ).scalar_one_or_none()

    def register_service(
        self,
        service_code: str,
        name: str,
        billing_unit: BillingUnit | str,
        actor_id: int,
        default_currency: str = "THB",
    ) -> ServiceInfo:
        actor_id = require_actor(actor_id, "register_service")
        if not service_code or not name:
            raise ValidationError("service_code and name are required", field="service_code")
        if self._service_by_code(service_code) is not None:
            raise DuplicateServiceCodeError(service_code)

        service = ServiceCatalog(
            service_code=service_code,
            name=name,
            billing_unit=parse_enum(BillingUnit, billing_unit, "billing_unit").value,
            default_currency=default_currency,
            is_active=True,
            created_by_id=actor_id,
        )
        self.session.add(service)
        self.session.flush()
        logger.info(
            "service_registered",
            extra={"service_code": service_code, "billing_unit": service.billing_unit},
        )
        return ServiceInfo.from_model(service)

    def set_service_active(self, service_code: str, is_active: bool, actor_id: int) -> ServiceInfo:
        actor_id = require_actor(actor_id, "set_service_active")
        service = self._service_by_code(service_code)
        if service is None:
            raise ServiceNotFoundError(service_code)
        service.is_active = is_active
        service.updated_by_id = actor_id
        self.session.flush()
        return ServiceInfo.from_model(service)

    def add_price_policy(
        self,
        client_id: int,
        service_code: str,
        unit_price: Decimal | int | str,
        currency: str,
        effective_from: date,
        actor_id: int,
        effective_to: date | None = None,
        billing_basis: BillingBasis | str | None = None,
    ) -> PriceQuote:
        actor_id = require_actor(actor_id, "add_price_policy")
        service = self._service_by_code(service_code)
        if service is None:
            raise ServiceNotFoundError(service_code)

        price = to_decimal(unit_price, "unit_price")
        if price < 0:
            raise ValidationError(f"unit_price must be >= 0, got {price}", field="unit_price")
        if effective_to is not None and effective_to < effective_from:
            raise ValidationError("effective_to must not precede effective_from", field="effective_to")

        basis = (
            parse_enum(BillingBasis, billing_basis, "billing_basis")
            if billing_basis is not None
            else BillingUnit(service.billing_unit).default_basis
        )
        policy = PricePolicy(
            client_id=client_id,
            service_id=service.id,
            billing_basis=basis.value,
            unit_price=price,
            currency=currency.upper(),
            effective_from=effective_from,
            effective_to=effective_to,
            status=PricePolicyStatus.ACTIVE.value,
            created_by_id=actor_id,
        )
        self.session.add(policy)
        self.session.flush()
        self.session.refresh(policy)

        logger.info(
            "price_policy_added",
            extra={
                "client_id": client_id,
                "service_code": service_code,
                "unit_price": price,
                "currency": policy.currency,
                "effective_from": effective_from,
            },
        )
        return PriceQuote.from_model(policy)

    def deactivate_price_policy(self, policy_id: int, actor_id: int) -> None:
        actor_id = require_actor(actor_id, "deactivate_price_policy")
        policy = self.session.get(PricePolicy, policy_id)
        if policy is None:
            raise ValidationError(f"Price policy not found: {policy_id}", field="policy_id")
        policy.status = PricePolicyStatus.INACTIVE.value
        policy.updated_by_id = actor_id
        self.session.flush()
