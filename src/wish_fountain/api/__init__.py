"""HTTP and WebSocket surface for the Wish Fountain service."""
