"""Identity and roles — caller resolution and authorization predicates."""
