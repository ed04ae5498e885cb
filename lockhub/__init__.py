"""lockhub — device discovery and single-controller arbitration for ESP32 smart locks.

Quickstart::

    from lockhub.db import init_db
    from lockhub.arbitration import ArbitrationStore, CommandDispatcher

    init_db()
    dispatcher = CommandDispatcher(ArbitrationStore())
    record = dispatcher.toggle_lock("esp32-lock-01", session_id="user-a")
"""

__version__ = "0.3.0"
