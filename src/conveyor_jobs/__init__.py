"""Collaborator adapters for Conveyor stages and notifications.

Each module wraps one external tool and returns plain dicts.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""
