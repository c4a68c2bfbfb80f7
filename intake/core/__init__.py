"""Cross-cutting helpers: errors, clocks and request-scoped service wiring."""
