"""Order and quotation lifecycle."""
