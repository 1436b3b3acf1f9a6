"""
Runtime configuration read from the environment (backend/.env is loaded first).

Anomaly thresholds and detection windows are kept here so they can be tuned
per deployment.
"""

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'budget_transparency')

# Ledger
LEDGER_DIFFICULTY = int(os.environ.get('LEDGER_DIFFICULTY', '2'))
LEDGER_MINING_REWARD = float(os.environ.get('LEDGER_MINING_REWARD', '100'))
LEDGER_SYSTEM_ADDRESS = os.environ.get('LEDGER_SYSTEM_ADDRESS', 'system')


@dataclass(frozen=True)
class AnomalyThresholds:
    budget_overrun: float = 0.8
    overrun_high: float = 0.9
    overrun_critical: float = 0.95
    unusual_spending: float = 2.0
    unusual_spending_critical: float = 3.0
    duplicate_transaction: float = 0.95
    duplicate_high: float = 0.98
    spending_window: int = 10
    duplicate_window: int = 20
    min_transactions: int = 3

    @classmethod
    def from_env(cls) -> "AnomalyThresholds":
        return cls(
            budget_overrun=float(os.environ.get('ANOMALY_OVERRUN_THRESHOLD', cls.budget_overrun)),
            unusual_spending=float(os.environ.get('ANOMALY_UNUSUAL_SPENDING_RATIO', cls.unusual_spending)),
            duplicate_transaction=float(os.environ.get('ANOMALY_DUPLICATE_THRESHOLD', cls.duplicate_transaction)),
            spending_window=int(os.environ.get('ANOMALY_SPENDING_WINDOW', cls.spending_window)),
            duplicate_window=int(os.environ.get('ANOMALY_DUPLICATE_WINDOW', cls.duplicate_window)),
            min_transactions=int(os.environ.get('ANOMALY_MIN_TRANSACTIONS', cls.min_transactions)),
        )
