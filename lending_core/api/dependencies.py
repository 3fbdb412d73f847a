"""
Lending system wiring and FastAPI dependencies
"""

from typing import Optional

from ..storage import StorageInterface, create_storage
from ..schedule import ScheduleGenerator
from ..aggregation import LoanAggregator
from ..loans import LoanManager
from ..config import get_config


class LendingSystem:
    """Lending components wired against one storage backend"""

    def __init__(self, storage: Optional[StorageInterface] = None):
        if storage is None:
            config = get_config()
            storage = create_storage(config.storage_backend, config.database_path)
        self.storage = storage

        self.schedule_generator = ScheduleGenerator(self.storage)
        self.aggregator = LoanAggregator(self.storage)
        self.loan_manager = LoanManager(
            self.storage, self.schedule_generator, self.aggregator
        )


# Global lending system instance, created on first request
lending_system: Optional[LendingSystem] = None


# Dependency to get lending system
def get_lending_system() -> LendingSystem:
    global lending_system
    if lending_system is None:
        lending_system = LendingSystem()
    return lending_system
