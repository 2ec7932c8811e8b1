"""POS provider connectors"""

from app.connectors.base import BasePosConnector, NormalizedItem, NormalizedOrder, NormalizedPayment
from app.connectors.toast import ToastConnector
from app.connectors.square import SquareConnector

CONNECTORS = {
    ToastConnector.provider: ToastConnector,
    SquareConnector.provider: SquareConnector,
}


def get_connector_class(provider: str):
    try:
        return CONNECTORS[provider]
    except KeyError:
        raise ValueError(f"Unsupported POS provider: {provider}")
