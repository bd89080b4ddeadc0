from cldbar.profiles.registry import (
    Profile,
    ProfileRegistry,
    default_profiles,
    parse_profile,
    platform_config_dir,
)

__all__ = [
    "Profile",
    "ProfileRegistry",
    "default_profiles",
    "parse_profile",
    "platform_config_dir",
]
