from .config import GeneratorConfig, load_config
from .orchestrator import generate_columns, run_columns
from .responses import UNDETECTABLE, UnresolvedValue
from .schema import GroupColumnSpec, SingleColumnSpec

__all__ = [
    "GeneratorConfig",
    "GroupColumnSpec",
    "SingleColumnSpec",
    "UNDETECTABLE",
    "UnresolvedValue",
    "generate_columns",
    "load_config",
    "run_columns",
]
