"""
Errores de la capa de liquidación.
Cada error lleva el código HTTP con el que se expone; el handler de main.py
los convierte en el sobre {isSuccess: false, message}.
"""


class SettlementError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(SettlementError):
    status_code = 404


class UnauthorizedError(SettlementError):
    status_code = 403


class InvalidTransitionError(SettlementError):
    status_code = 409


class AlreadyInStatusError(InvalidTransitionError):
    def __init__(self, status: str):
        super().__init__(f"La reserva ya está en este estado ({status})")
        self.status = status


class ConcurrencyError(SettlementError):
    """Otra petición cambió la fila entre la lectura y la escritura."""
    status_code = 409


class InvalidAmountError(SettlementError):
    status_code = 400


class PaymentConflictError(SettlementError):
    status_code = 409


class GatewayError(SettlementError):
    status_code = 502


class WebhookError(SettlementError):
    """Firma o payload de webhook inválidos; la pasarela reintentará."""
    status_code = 400
