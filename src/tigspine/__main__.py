"""Boot payload entry point: ``python -m tigspine``."""

from tigspine.provision.bootstrap import main

if __name__ == "__main__":
    main()
