"""mediajobs: asynchronous media-generation job service."""
