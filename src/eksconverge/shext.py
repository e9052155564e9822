from __future__ import annotations

import functools
import subprocess

sh = functools.partial(
    subprocess.run,
    check=True,
    capture_output=True,
    text=True,
)

