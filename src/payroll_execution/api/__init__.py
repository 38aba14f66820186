"""HTTP layer for the payroll execution engine."""
