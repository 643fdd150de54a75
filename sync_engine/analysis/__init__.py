"""Analysis: context loading, workflow engine, alerting."""
