from contractmatch.server import main

raise SystemExit(main())
