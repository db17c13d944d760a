from m2pack.cli import main

raise SystemExit(main())
