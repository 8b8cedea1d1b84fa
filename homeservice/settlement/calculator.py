"""
Cálculos de dinero de la plataforma: comisión, ganancias del proveedor,
porcentaje de reembolso por cancelación e IVA.

Funciones puras, sin I/O. Los importes se calculan con Decimal y se
redondean a céntimos; en Mongo se guardan como float con 2 decimales.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from ..schemas.booking import BookingStatus
from ..config import Settings

Number = Union[int, float, Decimal]
CENT = Decimal("0.01")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() evita arrastrar el error binario del float
    return Decimal(str(value))


def to_cents(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(value: Number) -> int:
    """Importe en la unidad mínima de la moneda (céntimos), como lo espera la pasarela."""
    return int(to_cents(value) * 100)


@dataclass(frozen=True)
class CommissionPolicy:
    """Tasas de la plataforma. Se construye una vez desde Settings."""
    commission_rate: Decimal = Decimal("0.18")
    full_refund_hours: Decimal = Decimal("24")
    partial_refund_hours: Decimal = Decimal("12")
    partial_refund_percentage: int = 50
    vat_percentage: Decimal = Decimal("15")

    def __post_init__(self):
        if not Decimal("0") <= self.commission_rate <= Decimal("1"):
            raise ValueError("commission_rate debe estar entre 0 y 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> "CommissionPolicy":
        return cls(
            commission_rate=to_decimal(settings.commission_rate),
            vat_percentage=to_decimal(settings.vat_percentage),
        )


def commission(service_price: Number, rate: Number) -> Decimal:
    return to_cents(to_decimal(service_price) * to_decimal(rate))


def provider_earnings(service_price: Number, rate: Number) -> Decimal:
    # precio - comisión, así comisión + ganancias == precio siempre
    return to_decimal(service_price) - commission(service_price, rate)


def refund_percentage(status: BookingStatus, hours_until_scheduled: float,
                      policy: CommissionPolicy = CommissionPolicy()) -> int:
    """
    Política de cancelación:
    - reserva pendiente: 100%
    - 24h o más de antelación: 100%
    - entre 12h y 24h: 50%
    - menos de 12h (o la hora ya pasó): 0%
    Las reservas en curso o completadas no se pueden cancelar; se rechazan antes.
    """
    if status in (BookingStatus.in_progress, BookingStatus.completed):
        raise ValueError(f"No aplica reembolso a una reserva {status.value}")
    if status == BookingStatus.pending:
        return 100

    hours = to_decimal(hours_until_scheduled)
    if hours >= policy.full_refund_hours:
        return 100
    if hours >= policy.partial_refund_hours:
        return policy.partial_refund_percentage
    return 0


def refund_amount(paid_amount: Number, percentage: int) -> Decimal:
    """Se aplica sobre lo cobrado, nunca sobre el total nominal de la reserva."""
    if not 0 <= percentage <= 100:
        raise ValueError("percentage debe estar entre 0 y 100")
    paid = to_cents(paid_amount)
    return min(paid, to_cents(paid * percentage / 100))


def vat(service_price: Number, vat_percentage: Number) -> tuple[Decimal, Decimal]:
    """Devuelve (iva, total)."""
    price = to_cents(service_price)
    vat_amount = to_cents(price * to_decimal(vat_percentage) / 100)
    return vat_amount, price + vat_amount


class Calculator:
    """Calculadora ligada a una política concreta."""

    def __init__(self, policy: CommissionPolicy):
        self.policy = policy

    def commission(self, service_price: Number) -> Decimal:
        return commission(service_price, self.policy.commission_rate)

    def provider_earnings(self, service_price: Number) -> Decimal:
        return provider_earnings(service_price, self.policy.commission_rate)

    def refund_percentage(self, status: BookingStatus, hours_until_scheduled: float) -> int:
        return refund_percentage(status, hours_until_scheduled, self.policy)

    def refund_amount(self, paid_amount: Number, percentage: int) -> Decimal:
        return refund_amount(paid_amount, percentage)

    def vat(self, service_price: Number) -> tuple[Decimal, Decimal]:
        return vat(service_price, self.policy.vat_percentage)
