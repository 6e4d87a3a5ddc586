"""ChMS provider adapters.

Implementations of ChmsProviderPort, one per wire protocol:
- Rock RMS (OData-flavored REST, self-hosted)
- Planning Center (JSON:API)
- CCB (XML, 10,000 calls per day)

Use create_adapter() to build the right one from a ConnectionConfig.
"""

from .ccb import CcbAdapter
from .factory import SUPPORTED_PROVIDERS, create_adapter
from .planning_center import PlanningCenterAdapter
from .rock import RockAdapter

__all__ = [
    "CcbAdapter",
    "PlanningCenterAdapter",
    "RockAdapter",
    "SUPPORTED_PROVIDERS",
    "create_adapter",
]
