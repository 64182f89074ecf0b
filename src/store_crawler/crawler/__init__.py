"""Worker side: fetching, routing and the crawl loop."""
