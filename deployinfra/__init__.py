"""deployinfra - provision servers, tunnels and DNS across cloud vendors."""
