"""Platform integrations, loaded by module name from the instance configuration."""
