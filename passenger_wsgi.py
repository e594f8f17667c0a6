import sys
import os

# Passenger may start us from another directory; make the project importable
project_home = os.path.dirname(os.path.abspath(__file__))
if project_home not in sys.path:
    sys.path.insert(0, project_home)

from main import create_app

# Passenger looks for a module-level callable named 'application'
application = create_app('production')
