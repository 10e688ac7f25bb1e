"""TravelPoint operator CLI."""
