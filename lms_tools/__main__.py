from lms_tools.cli import main

raise SystemExit(main())
