"""Services for reviewing GitLab merge requests."""
