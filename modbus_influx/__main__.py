import sys

from modbus_influx.main import main

sys.exit(main())
