"""BudgetSmart - budget baskets from seller storefront catalogs."""

__version__ = "1.0.0"
