import sys

from sqlfluff_lsp.cli import main

sys.exit(main())
