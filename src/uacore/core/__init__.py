"""Configuration, logging, errors and events shared by every uacore layer."""
