"""
Пакет для списання бонусів в угодах Bitrix24
"""

from .allocation import (
    AllocationError,
    AllocationReport,
    AllocationResult,
    InvalidBonusAmount,
    LineItem,
    NoEligibleItems,
    ResidualMismatch,
    allocate,
)
from .bitrix_client import BitrixClient, BonusPolicy
from .config import Settings, load_settings
from .deal_operations import DealOperations

__all__ = [
    'AllocationError',
    'AllocationReport',
    'AllocationResult',
    'BitrixClient',
    'BonusPolicy',
    'DealOperations',
    'InvalidBonusAmount',
    'LineItem',
    'NoEligibleItems',
    'ResidualMismatch',
    'Settings',
    'allocate',
    'load_settings'
]
