from __future__ import annotations

from typing import List, Optional

import serial
import structlog

logger = structlog.get_logger(__name__)

# Framing bytes some readers (e.g. RDM6300) wrap around each ID.
_FRAMING = b"\r\n\x02\x03 \t"


def decode_uid(line: bytes) -> Optional[bytes]:
    """
    Turn one line of reader output into a card identifier.

    Hex output is decoded to raw bytes; anything else (decimal serials and
    the like) is kept as its ASCII text. Blank lines yield None.
    """

    text = line.strip(_FRAMING).decode("ascii", errors="ignore").strip()
    if not text:
        return None
    try:
        return bytes.fromhex(text)
    except ValueError:
        return text.encode("ascii")


class SerialCardDevice:
    """
    A line-oriented card reader on a serial port, read with pyserial.

    The port is opened non-blocking; each `list_targets` call returns the
    identifiers of all complete lines received since the previous call.
    """

    def __init__(
        self,
        port: str,
        baudrate: int = 9600,
        serial_port: Optional[serial.SerialBase] = None,
    ) -> None:
        self._port = serial_port or serial.Serial(port, baudrate, timeout=0)
        self._buffer = b""
        logger.info("serial_reader_opened", port=port, baudrate=baudrate)

    def list_targets(self) -> List[bytes]:
        waiting = self._port.in_waiting
        if waiting:
            self._buffer += self._port.read(waiting)
        *lines, self._buffer = self._buffer.split(b"\n")
        targets = []
        for line in lines:
            uid = decode_uid(line)
            if uid is not None:
                targets.append(uid)
        return targets

    def close(self) -> None:
        self._port.close()
