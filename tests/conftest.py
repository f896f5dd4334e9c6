import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for src in (ROOT / "services" / "common" / "src", ROOT / "services" / "mediasync" / "src"):
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
