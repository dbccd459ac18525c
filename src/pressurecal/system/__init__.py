"""Settings files and hardware factories."""

from .settings import (
    SETTINGS_FILE,
    config_to_settings,
    create_default_settings_file,
    demo_peripheral_backend,
    load_settings,
    make_instrument,
    make_peripheral_manager,
    save_settings,
    settings_to_config,
    validate_settings,
)
