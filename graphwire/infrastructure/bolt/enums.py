from enum import StrEnum


class ConnectionState(StrEnum):
    READY = "ready"
    AUTO_STREAMING = "auto_streaming"
    IN_TX = "in_tx"
    TX_STREAMING = "tx_streaming"
    FAILED = "failed"
    DEAD = "dead"
