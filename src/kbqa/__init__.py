"""Knowledge-base question answering with catalog-numbered citations."""
