"""Server-side game logic for the Imposter party game."""
