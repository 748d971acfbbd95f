import sys

from dashpack.cli import main

# Run the dasher
if __name__ == "__main__":
    sys.exit(main())
