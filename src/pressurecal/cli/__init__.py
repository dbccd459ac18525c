"""
Command-line interface for pressurecal.

- Running a calibration sweep (real or simulated hardware)
- Checking the reference instrument
- Inspecting the sweep profile and settings
- Serving a simulated instrument over TCP

Examples
--------
A full simulated run:
```bash
$ pressurecal run --simulate
```

Against a simulated instrument over the network:
```bash
$ pressurecal mock-server -p 3490 &
$ pressurecal check -h 127.0.0.1 -p 3490
```

CLI Tree
--------

```
$ pressurecal --tree
cli
└── check
└── mock-server
└── profile
└── run
└── settings
    └── init
    └── show
```

See Also
--------
pressurecal.sweep : Calibration session
pressurecal.system : Settings files
"""

from .base import cli, tree_option
