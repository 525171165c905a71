"""Domain and database models for the Notd engine."""
