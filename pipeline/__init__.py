"""Call client: transcript debouncing, transport, conversation log and the call state machine."""
