from .main import CoreAddon
