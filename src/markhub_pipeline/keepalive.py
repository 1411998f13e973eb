"""
Модуль keepalive.py
Долгоживущее соединение content script с фоновым процессом расширения.

Соединение отправляет ping с фиксированным интервалом, переподключается
с фиксированной задержкой после разрыва и прекращает работу навсегда,
когда контекст расширения стал недействительным (расширение обновлено
или удалено).
"""
import asyncio
import time
from typing import Optional, Protocol

from .errors import TransportError
from .logger import get_logger, log_error_with_context
from .messages import PingMessage

logger = get_logger(__name__)

PORT_NAME = "keepAlive"
INVALIDATED_MARKER = "Extension context invalidated"


class RuntimePort(Protocol):
    """Открытый порт к фоновому процессу."""

    async def post_message(self, message: dict) -> None:
        ...

    async def wait_disconnected(self) -> None:
        """Завершается, когда порт закрыт другой стороной."""
        ...

    def disconnect(self) -> None:
        ...


class ExtensionRuntime(Protocol):
    """Среда выполнения расширения со стороны content script."""

    def is_valid(self) -> bool:
        """False, если идентификатор расширения больше недоступен."""
        ...

    async def connect(self, name: str) -> RuntimePort:
        ...


def is_context_invalidated(error: BaseException) -> bool:
    return INVALIDATED_MARKER in str(error)


class KeepaliveConnection:
    """
    Поддержка соединения с фоновым процессом.

    Аргументы:
        runtime: Среда выполнения расширения
        interval: Интервал ping в секундах
        reconnect_delay: Задержка переподключения в секундах
    """

    def __init__(self, runtime: ExtensionRuntime, interval: float = 25.0, reconnect_delay: float = 2.0):
        self.runtime = runtime
        self.interval = interval
        self.reconnect_delay = reconnect_delay
        self.port: Optional[RuntimePort] = None
        self.invalidated = False
        self.connect_count = 0
        self.pings_sent = 0
        self._stopped = False
        self._runner: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    @property
    def is_connected(self) -> bool:
        return self.port is not None

    def start(self) -> asyncio.Task:
        """Запускает цикл соединения в текущем цикле событий."""
        if self.is_running:
            return self._runner
        self._stopped = False
        self._runner = asyncio.get_running_loop().create_task(self._run())
        return self._runner

    async def stop(self) -> None:
        self._stopped = True
        self._close_port()
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
        logger.info("Keepalive-соединение остановлено")

    def _invalidate(self, reason: str) -> None:
        self.invalidated = True
        self._stopped = True
        self._close_port()
        logger.warning(f"Контекст расширения недействителен, переподключение прекращено: {reason}")

    def _close_port(self) -> None:
        if self.port is not None:
            port, self.port = self.port, None
            try:
                port.disconnect()
            except TransportError as e:
                logger.debug(f"Ошибка при закрытии порта: {e}")

    async def _heartbeat(self, port: RuntimePort) -> None:
        while True:
            await asyncio.sleep(self.interval)
            ping = PingMessage(timestamp=int(time.time() * 1000)).to_wire()
            await port.post_message(ping)
            self.pings_sent += 1
            logger.debug(f"Keepalive ping отправлен ({self.pings_sent})")

    async def _serve_port(self, port: RuntimePort) -> None:
        heartbeat = asyncio.ensure_future(self._heartbeat(port))
        closed = asyncio.ensure_future(port.wait_disconnected())
        try:
            done, _pending = await asyncio.wait({heartbeat, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for future in (heartbeat, closed):
                future.cancel()
            await asyncio.gather(heartbeat, closed, return_exceptions=True)

        if heartbeat in done and heartbeat.exception() is not None:
            raise heartbeat.exception()

    async def _run(self) -> None:
        while not self._stopped:
            if not self.runtime.is_valid():
                self._invalidate("идентификатор расширения недоступен")
                return

            try:
                port = await self.runtime.connect(PORT_NAME)
                self.port = port
                self.connect_count += 1
                logger.info(f"Keepalive-соединение установлено (подключение #{self.connect_count})")
                await self._serve_port(port)
                logger.info("Keepalive-соединение разорвано")
            except TransportError as e:
                if is_context_invalidated(e):
                    self._invalidate(str(e))
                    return
                log_error_with_context(e, {"operation": "keepalive", "connect_count": self.connect_count})
            finally:
                self.port = None

            if self._stopped:
                return
            await asyncio.sleep(self.reconnect_delay)
