import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = str(ROOT / "src")

if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)
