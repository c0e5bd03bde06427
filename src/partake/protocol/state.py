from enum import Enum, auto

class TransportState(Enum):
    NEGOTIATING = auto()
    DIRECT = auto()
    RELAY = auto()
    CLOSED = auto()

SETTLED = (TransportState.DIRECT, TransportState.RELAY, TransportState.CLOSED)
