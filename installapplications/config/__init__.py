# Copyright 2025 Roger Cibrian
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Settings loading for InstallApplications.

Settings come from YAML files layered over built-in defaults:

  - Built-in defaults (platform dependent paths)
  - Machine settings (%ProgramData%\\InstallApplications\\config.yaml)
  - Explicit settings file (--config PATH)
  - INSTALLAPPS_* environment variables (.env supported)

Dicts merge recursively; lists and scalars are replaced (last wins).

Public API:

- load_settings: Build the effective Settings
- Settings: Frozen settings dataclass

Example:

    from installapplications.config import load_settings

    settings = load_settings()
    print(settings.cache_dir)
"""

from .loader import FAILURE_POLICIES, Settings, load_settings

__all__ = ["FAILURE_POLICIES", "Settings", "load_settings"]
