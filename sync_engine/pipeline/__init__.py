"""Pipeline stages: fetch, normalize, link, sweep."""
