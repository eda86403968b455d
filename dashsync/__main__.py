"""
Run the sync engine headless: python -m dashsync
"""

import asyncio

from .config.settings import Settings
from .container import Container
from .services.logging_service import configure_logging, get_logger

logger = get_logger("dashsync")


async def main() -> None:
    settings = Settings()
    configure_logging(settings.app.log_level, settings.app.json_logs)

    container = Container().configure(settings)
    async with container:
        def log_view(view):
            logger.info(
                "Dashboard updated",
                connection=view.connection.status.value,
                pending=view.pending_count,
                total_profit=view.summary.total_profit,
                dead_letters=len(view.dead_letters),
            )

        container.get_reconciler().subscribe(log_view)
        await asyncio.Event().wait()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
