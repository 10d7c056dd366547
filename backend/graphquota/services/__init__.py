from graphquota.services.notifications import TelegramNotifier, build_circuit_alert_hook
from graphquota.services.serial_queue import CreationLoopReport, SerialQueue, process_operations_serially

__all__ = [
    "SerialQueue",
    "CreationLoopReport",
    "process_operations_serially",
    "TelegramNotifier",
    "build_circuit_alert_hook",
]
