import sys

from trailexport.exporter import config
from trailexport.exporter.cli import main

if __name__ == "__main__":
    # With no arguments, open the browser and serve the control panel.
    argv = sys.argv[1:] or ["run", "--panel-port", str(config.PANEL_PORT)]
    raise SystemExit(main(argv))
