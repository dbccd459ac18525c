# -*- coding: utf-8 -*-
"""# pressurecal

Automated pressure calibration: a precision pressure reference, driven over
its TCP remote-control interface, is stepped through an ascending then
descending pressure profile while wireless pressure-sensor peripherals are
read and compared against it at every settled step.

- `pressurecal.device`: instrument link & controller, peripheral connection
  manager, simulated hardware
- `pressurecal.sweep`: sweep scheduler, calibration session state machine,
  results & certification
- `pressurecal.system`: settings files, hardware factories
- `pressurecal.cli`: the `pressurecal` command line
"""

from ._version import __version__
