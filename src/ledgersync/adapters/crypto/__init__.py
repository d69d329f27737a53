from ledgersync.adapters.crypto.descriptions import DescriptionCipher

__all__ = ["DescriptionCipher"]
