"""Crystal model, detector geometry and reflection prediction."""
