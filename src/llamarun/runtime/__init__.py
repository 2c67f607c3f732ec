"""Process supervision, health probing and completion proxying for llama-server."""
