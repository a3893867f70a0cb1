import os
import sys
from pathlib import Path

repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
services_path = Path(repo_root) / "services"
sys.path.insert(0, str(services_path))

os.environ.setdefault("PG_HOST", "localhost")
os.environ.setdefault("MQTT_HOST", "localhost")
