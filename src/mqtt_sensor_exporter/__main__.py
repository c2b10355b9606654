import sys

from mqtt_sensor_exporter.main import main

sys.exit(main())
