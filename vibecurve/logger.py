# vibecurve/logger.py
import asyncio
import aiofiles
from aiocsv import AsyncWriter
import logging
import sys
import os
from typing import List, Any, Optional

AUDIT_HEADER = [
    "timestamp", "source", "token", "direction", "amount",
    "filled_amount", "fill_price", "pnl", "relay_id", "status", "error",
]


class AsyncAuditLogger:
    """
    Non-blocking, write-only trade audit trail.
    Decouples disk I/O from the trading loop using an asyncio Queue.
    Nothing ever reads this file back; it is a log, not state.
    """
    def __init__(self, filepath: str, logger: Optional[logging.Logger] = None):
        self.filepath = filepath
        self.logger = logger or logging.getLogger("VibeCurve")
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return bool(self.filepath)

    async def start(self):
        """
        Creates the log file (with a header if new) and starts the background writer.
        """
        if not self.enabled or self._worker_task is not None:
            return

        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        is_new = not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0
        if is_new:
            async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                writer = AsyncWriter(f, dialect='unix')
                await writer.writerow(AUDIT_HEADER)

        self._worker_task = asyncio.create_task(self._writer_worker())

    async def log_trade(self, data: List[Any]):
        """
        Non-blocking call to add a trade record to the queue.
        """
        if not self.enabled:
            return
        await self._queue.put(data)

    async def _writer_worker(self):
        """
        Background consumer that writes to disk.
        """
        while True:
            row = await self._queue.get()
            try:
                async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                    writer = AsyncWriter(f, dialect='unix')
                    await writer.writerow(row)
            except Exception as e:
                # Disk trouble must never stop trading.
                self.logger.error(f"AUDIT LOG FAILURE: {e!r}")
            finally:
                self._queue.task_done()

    async def stop(self):
        """Flushes pending rows and stops the writer."""
        if self._worker_task is None:
            return
        await self._queue.join()
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None


def setup_console_logger(name: str, level: str):
    """
    Sets up the standard Python logger for console output.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
