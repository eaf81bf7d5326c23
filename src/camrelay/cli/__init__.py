"""CamRelay command line interface."""
