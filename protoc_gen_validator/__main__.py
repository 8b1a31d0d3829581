import sys

from .plugin import main_plugin

if __name__ == '__main__':
    sys.exit(main_plugin())
