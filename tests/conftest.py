"""Test configuration ensuring local package import when editable install not active.

If users invoke `pytest` outside the project's virtualenv, we still add the src
directory to sys.path so `import services` works. Log files go to a temporary
directory instead of the source tree.
"""

import os
import sys
import tempfile
from pathlib import Path

SRC = Path(__file__).resolve().parents[1] / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

os.environ.setdefault("ADO_ROLLUP_LOG_DIR", tempfile.mkdtemp(prefix="ado_rollup_logs_"))
