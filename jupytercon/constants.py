# Defaults and wire-level constants
# Centralized so the provisioner, cache and kernel client agree on names

import os
from pathlib import Path

# BinderHub defaults used when no SessionSpec fields are given
DEFAULT_BASE_URL = "https://mybinder.org"
DEFAULT_PROVIDER = "gh"
DEFAULT_SPEC = "oeway/imjoy-binder-image/master"

# Storage slots shared with the browser build (localStorage keys)
SERVER_PARAMS_KEY = "serverParams"
KERNEL_ID_KEY = "kernelId"

DEFAULT_CACHE_PATH = Path(
    os.environ.get("JUPYTERCON_HOME", str(Path.home() / ".jupytercon"))
) / "session.json"

# Message type for widgets
WIDGET_MSG = "application/vnd.jupyter.widget-view+json"
WIDGET_PROTOCOL_MAJOR = 2

# BinderHub build phases
PHASE_READY = "ready"
PHASE_FAILED = "failed"
