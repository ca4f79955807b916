"""Generation request dispatch and job lifecycle helpers."""
