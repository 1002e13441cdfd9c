"""Rate and abuse guard for guest-originated writes."""
