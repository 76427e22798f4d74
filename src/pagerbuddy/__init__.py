"""pagerbuddy: alert deduplication, routing and delivery."""
