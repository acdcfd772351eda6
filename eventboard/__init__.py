"""EventBoard: event listing, banners, and RSVPs over a live document store."""
