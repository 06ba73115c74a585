import logging
import threading

from src.application.booking_service import BookingService

logger = logging.getLogger(__name__)


class ReservationSweeper:
    """
    Background thread cancelling pending bookings whose reservation TTL ran
    out, so abandoned checkouts do not hold inventory.
    """

    def __init__(
        self,
        booking_service: BookingService,
        interval_seconds: float,
        batch_size: int = 100,
    ):
        self.booking_service = booking_service
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="reservation-sweeper",
            daemon=True,
        )
        self._thread.start()
        logger.info("Reservation sweeper started (every %.1f seconds)", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Reservation sweeper stopped")

    def sweep_once(self) -> int:
        expired = 0
        while True:
            batch = self.booking_service.expire_reservations(limit=self.batch_size)
            expired += batch
            if batch < self.batch_size:
                return expired

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep_once()
            except Exception:
                # Keep sweeping; the next pass retries whatever failed.
                logger.exception("Reservation sweep failed")
